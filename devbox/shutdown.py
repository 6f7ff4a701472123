"""Self-stop cascade run by the idle daemon on the VM.

Stages are tried in order until one reports success:

1. ``gcloud compute instances stop`` for the identity read from the
   metadata server.
2. A direct POST to the Compute REST ``stop`` endpoint with the default
   service account's access token.
3. Local OS power-off. Last resort; assumed not to fail.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Final, Protocol

import httpx
from loguru import logger

from devbox import shell
from devbox.errors import DevboxError
from devbox.shell import Runner

log = logger.bind(component="shutdown")

METADATA_URL: Final = "http://metadata.google.internal/computeMetadata/v1"
METADATA_HEADERS: Final = {"Metadata-Flavor": "Google"}
COMPUTE_API_URL: Final = "https://compute.googleapis.com/compute/v1"

METADATA_TIMEOUT: Final = 5.0
REST_TIMEOUT: Final = 30.0
GCLOUD_TIMEOUT: Final = 300.0

# Operation statuses meaning the stop request was accepted
ACCEPTED_STATUSES: Final = frozenset({"DONE", "PENDING", "RUNNING"})


class MetadataError(DevboxError):
    """The instance metadata server could not be read."""


@dataclass(frozen=True, slots=True)
class InstanceIdentity:
    name: str
    zone: str
    project: str


class MetadataServer:
    """Read-only client for the instance metadata server."""

    def __init__(self, http: httpx.Client, base_url: str = METADATA_URL) -> None:
        self._http = http
        self._base_url = base_url

    def _get(self, path: str) -> httpx.Response:
        try:
            resp = self._http.get(
                f"{self._base_url}/{path}", headers=METADATA_HEADERS, timeout=METADATA_TIMEOUT,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MetadataError(f"metadata {path}: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise MetadataError(f"metadata {path}: {e}") from e
        return resp

    def _text(self, path: str) -> str:
        value = self._get(path).text.strip()
        if not value:
            raise MetadataError(f"metadata {path}: empty value")
        return value

    def identity(self) -> InstanceIdentity:
        # zone comes back as projects/<number>/zones/<zone>
        zone = self._text("instance/zone").rsplit("/", 1)[-1]
        return InstanceIdentity(
            name=self._text("instance/name"),
            zone=zone,
            project=self._text("project/project-id"),
        )

    def access_token(self) -> str:
        body = self._get("instance/service-accounts/default/token").json()
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise MetadataError("metadata token: no access_token in response")
        return token


# =============================================================================
# Strategies
# =============================================================================


class StopStrategy(Protocol):
    name: str

    def attempt(self) -> bool:
        """Try to stop the VM. ``False`` means unavailable or failed."""
        ...


class GcloudStop:
    name = "gcloud"

    def __init__(
        self,
        metadata: MetadataServer,
        runner: Runner = shell.run,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._metadata = metadata
        self._runner = runner
        self._which = which

    def attempt(self) -> bool:
        if self._which("gcloud") is None:
            log.warning("gcloud not installed on this VM")
            return False

        ident = self._metadata.identity()
        log.info(
            "Stopping {name} in {zone} ({project}) via gcloud",
            name=ident.name, zone=ident.zone, project=ident.project,
        )
        result = self._runner(
            [
                "gcloud", "compute", "instances", "stop", ident.name,
                f"--zone={ident.zone}", f"--project={ident.project}", "--quiet",
            ],
            timeout=GCLOUD_TIMEOUT,
        )
        if not result.success:
            log.warning("gcloud stop exited {code}: {err}", code=result.exit_code, err=result.stderr.strip())
        return result.success


class RestApiStop:
    name = "rest-api"

    def __init__(
        self,
        metadata: MetadataServer,
        http: httpx.Client,
        api_url: str = COMPUTE_API_URL,
    ) -> None:
        self._metadata = metadata
        self._http = http
        self._api_url = api_url

    def attempt(self) -> bool:
        ident = self._metadata.identity()
        token = self._metadata.access_token()
        url = (
            f"{self._api_url}/projects/{ident.project}/zones/{ident.zone}"
            f"/instances/{ident.name}/stop"
        )
        log.info("Stopping {name} via REST API", name=ident.name)
        try:
            resp = self._http.post(
                url, headers={"Authorization": f"Bearer {token}"}, timeout=REST_TIMEOUT,
            )
        except httpx.RequestError as e:
            log.warning("REST stop request failed: {err}", err=e)
            return False

        if resp.status_code == 200:
            return True
        status = _operation_status(resp)
        if status in ACCEPTED_STATUSES:
            return True
        log.warning(
            "REST stop returned HTTP {code}: {body}",
            code=resp.status_code, body=resp.text[:500],
        )
        return False


class LocalPowerOff:
    name = "local-poweroff"

    def __init__(self, runner: Runner = shell.run) -> None:
        self._runner = runner

    def attempt(self) -> bool:
        log.warning("Powering off locally")
        if not self._runner(["systemctl", "poweroff"], timeout=60).success:
            self._runner(["shutdown", "-h", "now"], timeout=60)
        return True


def _operation_status(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("status") if isinstance(body, dict) else None


# =============================================================================
# Cascade
# =============================================================================


class ShutdownCascade:
    """Ordered stop strategies; stops at the first success."""

    def __init__(self, strategies: Sequence[StopStrategy]) -> None:
        self.strategies = tuple(strategies)

    def run(self) -> bool:
        for strategy in self.strategies:
            log.info("Shutdown stage: {name}", name=strategy.name)
            try:
                stopped = strategy.attempt()
            except Exception as e:
                log.warning("Shutdown stage {name} raised: {err}", name=strategy.name, err=e)
                stopped = False

            if stopped:
                log.info("Shutdown stage {name} succeeded", name=strategy.name)
                return True
            log.warning("Shutdown stage {name} unavailable or failed", name=strategy.name)

        log.error("All shutdown stages failed")
        return False


def default_cascade(
    runner: Runner = shell.run,
    http: httpx.Client | None = None,
) -> ShutdownCascade:
    client = http or httpx.Client()
    metadata = MetadataServer(client)
    return ShutdownCascade([
        GcloudStop(metadata, runner),
        RestApiStop(metadata, client),
        LocalPowerOff(runner),
    ])
