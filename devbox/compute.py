"""Cloud Compute API façade.

A thin typed layer over Compute Engine instance, disk and metadata
operations. Describe calls return ``None`` for missing resources instead of
raising; mutating calls block until their zonal operation completes and are
safe to re-issue. Transient API errors are retried a bounded number of
times with a fixed backoff; anything else surfaces as
:class:`~devbox.errors.RemoteOperationError` carrying the equivalent manual
``gcloud`` command.
"""

from __future__ import annotations

import shlex
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from google.api_core import exceptions as gexc
from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from devbox.constants import (
    COMPUTE_SCOPE,
    FLASH_BOOT_DISK,
    FLASH_ONLY_FAMILIES,
    STANDARD_BOOT_DISK,
)
from devbox.errors import RemoteOperationError
from devbox.models import DiskInfo, DiskSpec, InstanceInfo, VmSpec, VmState

log = logger.bind(component="compute")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    gexc.TooManyRequests,
    gexc.InternalServerError,
    gexc.BadGateway,
    gexc.ServiceUnavailable,
    gexc.GatewayTimeout,
)
TRANSIENT_ATTEMPTS = 3
TRANSIENT_DELAY = 5.0
OPERATION_TIMEOUT = 600


def _retrying(sleep: Callable[[float], None]) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(TRANSIENT_ATTEMPTS),
        wait=wait_fixed(TRANSIENT_DELAY),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        sleep=sleep,
        before_sleep=_log_transient,
        reraise=True,
    )


def _log_transient(state: RetryCallState) -> None:
    err = state.outcome.exception() if state.outcome else None
    log.warning(
        "Transient API error, retrying ({n}/{total}): {err}",
        n=state.attempt_number, total=TRANSIENT_ATTEMPTS, err=err,
    )


class ComputeClient(Protocol):
    """Operations the reconciler, bridge and CLI need from the provider."""

    def get_disk(self, name: str, zone: str) -> DiskInfo | None: ...
    def create_disk(self, spec: DiskSpec) -> None: ...
    def delete_disk(self, name: str, zone: str) -> None: ...
    def get_instance(self, name: str, zone: str) -> InstanceInfo | None: ...
    def create_instance(self, spec: VmSpec, metadata: Mapping[str, str]) -> None: ...
    def delete_instance(self, name: str, zone: str) -> None: ...
    def start_instance(self, name: str, zone: str) -> None: ...
    def stop_instance(self, name: str, zone: str) -> None: ...
    def attach_disk(self, name: str, zone: str, disk_name: str, device_name: str) -> None: ...
    def add_metadata(self, name: str, zone: str, items: Mapping[str, str]) -> None: ...


def vm_state(client: ComputeClient, name: str, zone: str) -> VmState:
    """Describe the VM and return its lifecycle state."""
    info = client.get_instance(name, zone)
    return info.state if info else VmState.NOT_FOUND


class GcpComputeClient:
    """Stateless Compute Engine client. Holds only the project + sync clients."""

    def __init__(
        self,
        project: str,
        instances_client: Any,
        disks_client: Any,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._project = project
        self._instances = instances_client
        self._disks = disks_client
        self._sleep = sleep

    @classmethod
    def create(cls, project: str) -> GcpComputeClient:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        log.debug("Creating Compute Engine clients for {project}", project=project)
        return cls(
            project=project,
            instances_client=compute_v1.InstancesClient(),
            disks_client=compute_v1.DisksClient(),
        )

    @property
    def project(self) -> str:
        return self._project

    # -------------------------------------------------------------------------
    # Disks
    # -------------------------------------------------------------------------

    def get_disk(self, name: str, zone: str) -> DiskInfo | None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        disk = self._describe(
            "describe_disk",
            lambda: self._disks.get(request=compute_v1.GetDiskRequest(
                project=self._project, zone=zone, disk=name,
            )),
            remedy=self._gcloud("disks", "describe", name, zone=zone),
        )
        if disk is None:
            return None
        return DiskInfo(
            name=disk.name,
            zone=zone,
            size_gb=int(disk.size_gb or 0),
            type=_basename(getattr(disk, "type_", "")),
        )

    def create_disk(self, spec: DiskSpec) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        disk = compute_v1.Disk(
            name=spec.name,
            size_gb=spec.size_gb,
            type_=f"zones/{spec.zone}/diskTypes/{spec.type}",
        )
        self._mutate(
            "create_disk",
            lambda: self._disks.insert(request=compute_v1.InsertDiskRequest(
                project=self._project, zone=spec.zone, disk_resource=disk,
            )),
            remedy=self._gcloud(
                "disks", "create", spec.name, zone=spec.zone,
                extra=[f"--size={spec.size_gb}GB", f"--type={spec.type}"],
            ),
        )

    def delete_disk(self, name: str, zone: str) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        self._mutate(
            "delete_disk",
            lambda: self._disks.delete(request=compute_v1.DeleteDiskRequest(
                project=self._project, zone=zone, disk=name,
            )),
            remedy=self._gcloud("disks", "delete", name, zone=zone),
        )

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def get_instance(self, name: str, zone: str) -> InstanceInfo | None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        inst = self._describe(
            "describe_instance",
            lambda: self._instances.get(request=compute_v1.GetInstanceRequest(
                project=self._project, zone=zone, instance=name,
            )),
            remedy=self._gcloud("instances", "describe", name, zone=zone),
        )
        if inst is None:
            return None
        return InstanceInfo(
            name=inst.name,
            zone=zone,
            state=VmState.from_status(getattr(inst, "status", "")),
            disk_names=_attached_disk_names(inst),
            metadata=_metadata_items(inst),
        )

    def create_instance(self, spec: VmSpec, metadata: Mapping[str, str]) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        boot_disk_type = spec.boot_disk_type or boot_disk_type_for(spec.machine_type)
        zone = spec.zone

        boot = compute_v1.AttachedDisk(
            auto_delete=True,
            boot=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                source_image=f"projects/{spec.image_project}/global/images/family/{spec.image_family}",
                disk_size_gb=spec.boot_disk_size_gb,
                disk_type=f"zones/{zone}/diskTypes/{boot_disk_type}",
            ),
        )
        data = compute_v1.AttachedDisk(
            auto_delete=False,
            boot=False,
            device_name=spec.device_name,
            mode="READ_WRITE",
            source=f"projects/{self._project}/zones/{zone}/disks/{spec.attached_disk_name}",
        )

        # External NAT for outbound package downloads; SSH still goes over IAP.
        network_interface = compute_v1.NetworkInterface(
            network="global/networks/default",
            access_configs=[
                compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT"),
            ],
        )

        instance = compute_v1.Instance(
            name=spec.name,
            machine_type=f"zones/{zone}/machineTypes/{spec.machine_type}",
            disks=[boot, data],
            network_interfaces=[network_interface],
            metadata=compute_v1.Metadata(items=[
                compute_v1.Items(key=k, value=v) for k, v in metadata.items()
            ]),
            tags=compute_v1.Tags(items=list(spec.tags)),
            scheduling=compute_v1.Scheduling(automatic_restart=False),
            service_accounts=[
                compute_v1.ServiceAccount(email="default", scopes=[COMPUTE_SCOPE]),
            ],
        )

        log.info(
            "Creating VM {name} ({mt}, {zone}, boot disk {bdt})",
            name=spec.name, mt=spec.machine_type, zone=zone, bdt=boot_disk_type,
        )
        self._mutate(
            "create_instance",
            lambda: self._instances.insert(request=compute_v1.InsertInstanceRequest(
                project=self._project, zone=zone, instance_resource=instance,
            )),
            remedy=self._gcloud(
                "instances", "create", spec.name, zone=zone,
                extra=[
                    f"--machine-type={spec.machine_type}",
                    f"--image-family={spec.image_family}",
                    f"--image-project={spec.image_project}",
                    f"--boot-disk-size={spec.boot_disk_size_gb}GB",
                    f"--boot-disk-type={boot_disk_type}",
                    f"--disk=name={spec.attached_disk_name},device-name={spec.device_name},mode=rw",
                    "--no-restart-on-failure",
                    f"--scopes={COMPUTE_SCOPE}",
                ],
            ),
        )

    def delete_instance(self, name: str, zone: str) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        self._mutate(
            "delete_instance",
            lambda: self._instances.delete(request=compute_v1.DeleteInstanceRequest(
                project=self._project, zone=zone, instance=name,
            )),
            remedy=self._gcloud("instances", "delete", name, zone=zone),
        )

    def start_instance(self, name: str, zone: str) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        self._mutate(
            "start_instance",
            lambda: self._instances.start(request=compute_v1.StartInstanceRequest(
                project=self._project, zone=zone, instance=name,
            )),
            remedy=self._gcloud("instances", "start", name, zone=zone),
        )

    def stop_instance(self, name: str, zone: str) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        self._mutate(
            "stop_instance",
            lambda: self._instances.stop(request=compute_v1.StopInstanceRequest(
                project=self._project, zone=zone, instance=name,
            )),
            remedy=self._gcloud("instances", "stop", name, zone=zone),
        )

    def attach_disk(self, name: str, zone: str, disk_name: str, device_name: str) -> None:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        attached = compute_v1.AttachedDisk(
            source=f"projects/{self._project}/zones/{zone}/disks/{disk_name}",
            device_name=device_name,
            mode="READ_WRITE",
            auto_delete=False,
        )
        self._mutate(
            "attach_disk",
            lambda: self._instances.attach_disk(request=compute_v1.AttachDiskInstanceRequest(
                project=self._project, zone=zone, instance=name,
                attached_disk_resource=attached,
            )),
            remedy=self._gcloud(
                "instances", "attach-disk", name, zone=zone, extra=[f"--disk={disk_name}"],
            ),
        )

    def add_metadata(self, name: str, zone: str, items: Mapping[str, str]) -> None:
        """Set ``items`` on the instance, keeping every other metadata key."""
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        def _set() -> Any:
            inst = self._instances.get(request=compute_v1.GetInstanceRequest(
                project=self._project, zone=zone, instance=name,
            ))
            current = inst.metadata
            merged = {i.key: i.value for i in (current.items or [])}
            merged.update(items)
            metadata = compute_v1.Metadata(
                fingerprint=current.fingerprint,
                items=[compute_v1.Items(key=k, value=v) for k, v in merged.items()],
            )
            return self._instances.set_metadata(request=compute_v1.SetMetadataInstanceRequest(
                project=self._project, zone=zone, instance=name,
                metadata_resource=metadata,
            ))

        self._mutate(
            "add_metadata",
            _set,
            remedy=self._gcloud(
                "instances", "add-metadata", name, zone=zone,
                extra=[f"--metadata={','.join(items)}=..."],
            ),
        )

    # -------------------------------------------------------------------------
    # Call plumbing
    # -------------------------------------------------------------------------

    def _describe(self, operation: str, call: Callable[[], Any], *, remedy: str) -> Any:
        try:
            return _retrying(self._sleep)(call)
        except gexc.NotFound:
            return None
        except gexc.GoogleAPICallError as e:
            raise RemoteOperationError(
                operation, _error_message(e), code=_error_code(e), remedy=remedy,
            ) from e

    def _mutate(self, operation: str, call: Callable[[], Any], *, remedy: str) -> None:
        try:
            op = _retrying(self._sleep)(call)
            _wait_for_operation(op)
        except gexc.GoogleAPICallError as e:
            raise RemoteOperationError(
                operation, _error_message(e), code=_error_code(e), remedy=remedy,
            ) from e
        except TimeoutError as e:
            # concurrent.futures.TimeoutError from ExtendedOperation.result()
            raise RemoteOperationError(
                operation, f"did not finish within {OPERATION_TIMEOUT}s", remedy=remedy,
            ) from e
        log.debug("{op} completed", op=operation)

    def _gcloud(
        self, group: str, verb: str, name: str, *, zone: str, extra: list[str] | None = None,
    ) -> str:
        args = [
            "gcloud", "compute", group, verb, name, *(extra or []),
            f"--zone={zone}", f"--project={self._project}",
        ]
        return shlex.join(args)


# =============================================================================
# Pure helper functions (no API calls)
# =============================================================================


def boot_disk_type_for(machine_type: str) -> str:
    """Boot disk class for a machine type.

    c3/c4 families only support flash-backed boot disks; everything else
    gets standard persistent disk.
    """
    if machine_type.startswith(FLASH_ONLY_FAMILIES):
        return FLASH_BOOT_DISK
    return STANDARD_BOOT_DISK


def _wait_for_operation(operation: object) -> None:
    result = getattr(operation, "result", None)
    if callable(result):
        result(timeout=OPERATION_TIMEOUT)


def _basename(url: str) -> str:
    """Last path component of a resource URL (e.g. disk type, disk source)."""
    return url.rstrip("/").rsplit("/", 1)[-1] if url else ""


def _attached_disk_names(instance: object) -> tuple[str, ...]:
    return tuple(
        _basename(getattr(d, "source", ""))
        for d in getattr(instance, "disks", None) or []
        if getattr(d, "source", "")
    )


def _metadata_items(instance: object) -> dict[str, str]:
    metadata = getattr(instance, "metadata", None)
    items = getattr(metadata, "items", None) or []
    return {i.key: i.value for i in items}


def _error_message(e: gexc.GoogleAPICallError) -> str:
    return getattr(e, "message", None) or str(e)


def _error_code(e: gexc.GoogleAPICallError) -> int | None:
    code = getattr(e, "code", None)
    return int(code) if isinstance(code, int) else None
