"""Make the cluster's machine images usable from the caller's account.

Plain images are shared with the account through ECS. Encrypted images cannot
be shared, so an encrypted copy is created in the account by a ROS stack; the
stack name is derived from the image so a second run finds the existing stack.
"""

from __future__ import annotations

import json
import logging
import re
from collections import abc as cabc

from infra_actuator._actuator_models import MachineImage
from infra_actuator._cloud_clients import ECSClient, ROSClient

logger = logging.getLogger(__name__)

ENCRYPTED_IMAGE_STACK_PREFIX = "encrypted-image"

ENCRYPTED_IMAGE_TEMPLATE = json.dumps(
    {
        "ROSTemplateFormatVersion": "2015-09-01",
        "Parameters": {
            "ImageId": {"Type": "String"},
            "RegionId": {"Type": "String"},
            "ImageName": {"Type": "String"},
        },
        "Resources": {
            "EncryptedImage": {
                "Type": "ALIYUN::ECS::CopyImage",
                "Properties": {
                    "ImageId": {"Ref": "ImageId"},
                    "DestinationRegionId": {"Ref": "RegionId"},
                    "DestinationImageName": {"Ref": "ImageName"},
                    "Encrypted": True,
                },
            }
        },
        "Outputs": {
            "ImageId": {"Value": {"Fn::GetAtt": ["EncryptedImage", "ImageId"]}},
        },
    },
    sort_keys=True,
)

_STACK_NAME_INVALID = re.compile(r"[^a-zA-Z0-9_-]+")


def encrypted_image_stack_name(image: MachineImage) -> str:
    """Return the ROS stack name holding the encrypted copy of ``image``.

    Examples
    --------
    >>> encrypted_image_stack_name(MachineImage("coreos", "2023.4.0", "m-abc", True))
    'encrypted-image-coreos-2023-4-0'
    """
    suffix = _STACK_NAME_INVALID.sub("-", f"{image.name}-{image.version}")
    return f"{ENCRYPTED_IMAGE_STACK_PREFIX}-{suffix}"


def _share_plain_image(ecs: ECSClient, image: MachineImage, account_id: str) -> None:
    if account_id in ecs.list_image_share_accounts(image.image_id):
        logger.debug("Image %s already shared with %s", image.image_id, account_id)
        return
    logger.info("Sharing image %s with account %s", image.image_id, account_id)
    ecs.share_image_to_account(image.image_id, account_id)


def _ensure_encrypted_copy(ros: ROSClient, image: MachineImage, region: str) -> None:
    stack_name = encrypted_image_stack_name(image)
    if (stack_id := ros.get_stack_id(stack_name)) is not None:
        logger.debug("Encrypted copy stack %s exists (%s)", stack_name, stack_id)
        return
    logger.info("Creating encrypted copy of image %s via stack %s", image.image_id, stack_name)
    ros.create_stack(
        stack_name,
        ENCRYPTED_IMAGE_TEMPLATE,
        {"ImageId": image.image_id, "RegionId": region, "ImageName": stack_name},
    )


def share_customized_images(
    ecs: ECSClient,
    ros: ROSClient,
    account_id: str,
    region: str,
    images: cabc.Iterable[MachineImage],
) -> None:
    """Share or copy every machine image so ``account_id`` can boot it.

    Parameters
    ----------
    ecs, ros
        Clients scoped to the infrastructure's region and credentials.
    account_id
        Caller account; when empty nothing is done.
    region
        Region of the infrastructure.
    images
        Machine images the cluster uses in ``region``.
    """
    if not account_id:
        logger.info("Caller account unknown; skipping customized image sharing")
        return
    for image in images:
        if not image.image_id:
            continue
        if image.encrypted:
            _ensure_encrypted_copy(ros, image, region)
        else:
            _share_plain_image(ecs, image, account_id)
