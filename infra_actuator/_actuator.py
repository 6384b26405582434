"""Reconcile, restore, and delete Alicloud infrastructure through OpenTofu.

Each public operation is one sequential, blocking attempt. The first failing
step raises and nothing further runs; in particular no partial status is
written. Retrying is the caller's job.
"""

from __future__ import annotations

import logging
from collections import abc as cabc
from dataclasses import dataclass, field
from typing import Any, Protocol

from infra_actuator._actuator_errors import (
    InvalidProviderConfigError,
    OutputVariableMissingError,
)
from infra_actuator._actuator_models import (
    PURPOSE_NODES,
    Cluster,
    Credentials,
    Infrastructure,
    InfrastructureConfig,
    InfrastructureObjectStatus,
    InfrastructureStatus,
    OperationContext,
    RawState,
    SecurityGroup,
    VPCStatus,
)
from infra_actuator._chart_values import (
    OUTPUT_KEY_SECURITY_GROUP_ID,
    OUTPUT_KEY_VPC_CIDR,
    OUTPUT_KEY_VPC_ID,
    InitializerValues,
    TerraformChartOps,
)
from infra_actuator._cloud_clients import DEFAULT_INTERNET_CHARGE_TYPE, ClientFactory
from infra_actuator._credentials import resolve_credentials
from infra_actuator._iam import ensure_nat_gateway_role
from infra_actuator._image_sharing import share_customized_images
from infra_actuator._object_store import SecretReader, StatusWriter
from infra_actuator._state_reader import extract_egress_cidrs, state_output
from infra_actuator._tofu_delegate import (
    TERRAFORMER_PURPOSE,
    CreateOrUpdateState,
    CreateState,
    IaCDelegate,
    IaCDelegateFactory,
    StateSeed,
    TofuConfig,
)

logger = logging.getLogger(__name__)


def _decode_config(infra: Infrastructure) -> InfrastructureConfig:
    try:
        return InfrastructureConfig.from_mapping(infra.spec.provider_config)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        msg = f"Invalid providerConfig of {infra.namespace}/{infra.name}: {exc}"
        raise InvalidProviderConfigError(msg) from exc


def _recorded_vpc_id(infra: Infrastructure, delegate: IaCDelegate) -> str | None:
    """Return the VPC id from the work-dir state, else from the persisted state."""
    try:
        return delegate.get_state_output_variables(OUTPUT_KEY_VPC_ID)[OUTPUT_KEY_VPC_ID]
    except OutputVariableMissingError:
        pass
    if infra.status.state is None:
        return None
    return state_output(infra.status.state, OUTPUT_KEY_VPC_ID)


class ObjectStore(SecretReader, StatusWriter, Protocol):
    """Secret reads and status writes offered by one backing store."""


@dataclass(frozen=True, slots=True)
class DelegateSettings:
    """Per-deployment engine settings combined with each object's owner."""

    image: str = "tofu"
    log_level: str = "info"
    env: cabc.Mapping[str, str] = field(default_factory=dict)

    def config_for(self, infra: Infrastructure) -> TofuConfig:
        """Return the execution configuration for ``infra``."""
        return TofuConfig(
            owner=infra.owner_reference(),
            image=self.image,
            log_level=self.log_level,
            env=self.env,
        )


class Actuator:
    """Drive an Infrastructure object's cloud resources to its declared spec.

    Parameters
    ----------
    store
        Source of credential secrets and sink for status writes.
    client_factory
        Builds region and credential scoped cloud clients.
    delegate_factory
        Builds OpenTofu execution units.
    chart_ops
        Computes the variables handed to OpenTofu.
    settings
        Engine settings shared by every execution unit.
    """

    def __init__(
        self,
        store: ObjectStore,
        client_factory: ClientFactory,
        delegate_factory: IaCDelegateFactory,
        chart_ops: TerraformChartOps | None = None,
        settings: DelegateSettings | None = None,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.delegate_factory = delegate_factory
        self.chart_ops = chart_ops or TerraformChartOps()
        self.settings = settings or DelegateSettings()

    def reconcile(
        self, ctx: OperationContext, infra: Infrastructure, cluster: Cluster
    ) -> None:
        """Converge the infrastructure and persist the derived status.

        Without a persisted state the engine resumes from whatever an earlier,
        unrecorded attempt left in the work dir, or starts empty; otherwise it
        continues from the state persisted in ``infra.status``.
        """
        seed: StateSeed
        if infra.status.state is None:
            seed = CreateState()
        else:
            seed = CreateOrUpdateState(state=infra.status.state.decoded())
        logger.info("Reconciling infrastructure %s/%s", infra.namespace, infra.name)
        self._reconcile(ctx, infra, cluster, seed)
        logger.info("Reconciled infrastructure %s/%s", infra.namespace, infra.name)

    def restore(
        self, ctx: OperationContext, infra: Infrastructure, cluster: Cluster
    ) -> None:
        """Rebuild the engine state from ``infra.status`` and reconcile."""
        state = infra.status.state.decoded() if infra.status.state is not None else ""
        logger.info("Restoring infrastructure %s/%s", infra.namespace, infra.name)
        self._reconcile(ctx, infra, cluster, CreateOrUpdateState(state=state))
        logger.info("Restored infrastructure %s/%s", infra.namespace, infra.name)

    def delete(
        self, ctx: OperationContext, infra: Infrastructure, cluster: Cluster
    ) -> None:
        """Destroy everything the engine state records for ``infra``.

        With no state persisted or left in the work dir the engine is not
        invoked.
        """
        logger.info("Deleting infrastructure %s/%s", infra.namespace, infra.name)
        config = _decode_config(infra)
        credentials = resolve_credentials(self.store, infra.spec.secret_ref)
        delegate = self._new_delegate(infra)

        seed: StateSeed = CreateState()
        if infra.status.state is not None and infra.status.state.data:
            seed = CreateOrUpdateState(state=infra.status.state.decoded())
        variables = self._compute_chart_values(infra, config, cluster, credentials, delegate)
        delegate.initialize_with(
            self.delegate_factory.default_initializer(seed, variables, credentials)
        )
        delegate.destroy(ctx)
        logger.info("Deleted infrastructure %s/%s", infra.namespace, infra.name)

    def _new_delegate(self, infra: Infrastructure) -> IaCDelegate:
        return self.delegate_factory.new_for_config(
            TERRAFORMER_PURPOSE,
            infra.namespace,
            infra.name,
            self.settings.config_for(infra),
        )

    def _initializer_values(
        self,
        infra: Infrastructure,
        config: InfrastructureConfig,
        credentials: Credentials,
        delegate: IaCDelegate,
    ) -> InitializerValues:
        vpc_client = self.client_factory.new_vpc_client(
            infra.spec.region, credentials.access_key_id, credentials.access_key_secret
        )
        if config.networks.vpc.id:
            logger.debug("Using existing VPC %s", config.networks.vpc.id)
            info = vpc_client.get_vpc_info(config.networks.vpc.id)
            return self.chart_ops.compute_use_vpc_initializer_values(config, info)

        vpc_id = _recorded_vpc_id(infra, delegate)
        if vpc_id is None:
            logger.debug("No VPC recorded yet; using charge type %s", DEFAULT_INTERNET_CHARGE_TYPE)
            charge_type = DEFAULT_INTERNET_CHARGE_TYPE
        else:
            charge_type = vpc_client.fetch_eip_internet_charge_type(vpc_id)
        return self.chart_ops.compute_create_vpc_initializer_values(config, charge_type)

    def _compute_chart_values(
        self,
        infra: Infrastructure,
        config: InfrastructureConfig,
        cluster: Cluster,
        credentials: Credentials,
        delegate: IaCDelegate,
    ) -> dict[str, Any]:
        values = self._initializer_values(infra, config, credentials, delegate)
        return self.chart_ops.compute_chart_values(infra, config, cluster.pod_cidr, values)

    def _share_images(self, infra: Infrastructure, cluster: Cluster) -> None:
        credentials = resolve_credentials(self.store, infra.spec.secret_ref)
        region = infra.spec.region
        key_id, key_secret = credentials.access_key_id, credentials.access_key_secret
        ecs = self.client_factory.new_ecs_client(region, key_id, key_secret)
        ros = self.client_factory.new_ros_client(region, key_id, key_secret)
        sts = self.client_factory.new_sts_client(region, key_id, key_secret)
        account_id = sts.get_account_id_from_caller_identity()
        share_customized_images(ecs, ros, account_id, region, cluster.machine_images)

    def _reconcile(
        self,
        ctx: OperationContext,
        infra: Infrastructure,
        cluster: Cluster,
        seed: StateSeed,
    ) -> None:
        config = _decode_config(infra)
        credentials = resolve_credentials(self.store, infra.spec.secret_ref)

        ram = self.client_factory.new_ram_client(
            infra.spec.region, credentials.access_key_id, credentials.access_key_secret
        )
        ensure_nat_gateway_role(ram, infra.spec.region)

        delegate = self._new_delegate(infra)
        variables = self._compute_chart_values(infra, config, cluster, credentials, delegate)
        delegate.initialize_with(
            self.delegate_factory.default_initializer(seed, variables, credentials)
        )
        delegate.apply(ctx)
        logger.info("Applied OpenTofu configuration for %s/%s", infra.namespace, infra.name)

        self._share_images(infra, cluster)

        outputs = delegate.get_state_output_variables(
            OUTPUT_KEY_VPC_ID, OUTPUT_KEY_VPC_CIDR, OUTPUT_KEY_SECURITY_GROUP_ID
        )
        raw_state = delegate.get_raw_state()
        status = self._build_status(outputs, raw_state)

        self.store.patch_status(infra, status)
        infra.status = status

    def _build_status(
        self, outputs: cabc.Mapping[str, str], raw_state: RawState
    ) -> InfrastructureObjectStatus:
        return InfrastructureObjectStatus(
            provider_status=InfrastructureStatus(
                vpc=VPCStatus(
                    id=outputs[OUTPUT_KEY_VPC_ID],
                    security_groups=(
                        SecurityGroup(
                            purpose=PURPOSE_NODES,
                            id=outputs[OUTPUT_KEY_SECURITY_GROUP_ID],
                        ),
                    ),
                )
            ),
            egress_cidrs=tuple(extract_egress_cidrs(raw_state)),
            state=raw_state,
        )


__all__ = ["Actuator", "DelegateSettings", "ObjectStore"]
