from __future__ import annotations

import httpx
import pytest

from devbox.shell import CommandResult
from devbox.shutdown import (
    GcloudStop,
    LocalPowerOff,
    MetadataError,
    MetadataServer,
    RestApiStop,
    ShutdownCascade,
)

from tests.fakes import FakeRunner

METADATA = {
    "/computeMetadata/v1/instance/name": "devbox-alice",
    "/computeMetadata/v1/instance/zone": "projects/123456/zones/us-central1-a",
    "/computeMetadata/v1/project/project-id": "my-project",
}
STOP_PATH = "/compute/v1/projects/my-project/zones/us-central1-a/instances/devbox-alice/stop"


def _transport(
    events: list[str],
    *,
    stop_response: httpx.Response | None = None,
    metadata_up: bool = True,
) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.host == "metadata.google.internal":
            if not metadata_up:
                raise httpx.ConnectError("metadata unreachable", request=request)
            assert request.headers["Metadata-Flavor"] == "Google"
            if path.endswith("/service-accounts/default/token"):
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3599})
            if path in METADATA:
                return httpx.Response(200, text=METADATA[path])
            return httpx.Response(404)

        if path == STOP_PATH:
            events.append("rest")
            assert request.headers["Authorization"] == "Bearer tok"
            return stop_response or httpx.Response(200, json={"status": "DONE"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class RecordingRunner(FakeRunner):
    def __init__(self, events: list[str], responses=None) -> None:
        super().__init__(responses)
        self.events = events

    def __call__(self, args, *, timeout=None):
        self.events.append(args[0])
        return super().__call__(args, timeout=timeout)


def _cascade(
    events: list[str],
    *,
    gcloud_installed: bool = True,
    stop_response: httpx.Response | None = None,
    metadata_up: bool = True,
    runner_responses=None,
) -> tuple[ShutdownCascade, RecordingRunner]:
    http = httpx.Client(transport=_transport(events, stop_response=stop_response, metadata_up=metadata_up))
    metadata = MetadataServer(http)
    runner = RecordingRunner(events, runner_responses)
    which = (lambda _: "/usr/bin/gcloud") if gcloud_installed else (lambda _: None)
    cascade = ShutdownCascade([
        GcloudStop(metadata, runner, which=which),
        RestApiStop(metadata, http),
        LocalPowerOff(runner),
    ])
    return cascade, runner


class TestMetadataServer:
    def test_identity_strips_zone_path(self):
        http = httpx.Client(transport=_transport([]))
        ident = MetadataServer(http).identity()
        assert (ident.name, ident.zone, ident.project) == ("devbox-alice", "us-central1-a", "my-project")

    def test_access_token(self):
        http = httpx.Client(transport=_transport([]))
        assert MetadataServer(http).access_token() == "tok"

    def test_unreachable_raises(self):
        http = httpx.Client(transport=_transport([], metadata_up=False))
        with pytest.raises(MetadataError):
            MetadataServer(http).identity()


class TestCascadeOrdering:
    def test_gcloud_first(self):
        events: list[str] = []
        cascade, runner = _cascade(events)

        assert cascade.run() is True
        assert events == ["gcloud"]
        assert runner.calls[0] == [
            "gcloud", "compute", "instances", "stop", "devbox-alice",
            "--zone=us-central1-a", "--project=my-project", "--quiet",
        ]

    def test_rest_before_poweroff_when_gcloud_unavailable(self):
        events: list[str] = []
        cascade, _ = _cascade(events, gcloud_installed=False)

        assert cascade.run() is True
        assert events == ["rest"]

    def test_rest_after_gcloud_failure(self):
        events: list[str] = []
        cascade, _ = _cascade(events, runner_responses={"gcloud": CommandResult(1, "", "denied")})

        assert cascade.run() is True
        assert events == ["gcloud", "rest"]

    def test_poweroff_exactly_once_when_remote_fails(self):
        events: list[str] = []
        cascade, runner = _cascade(
            events,
            gcloud_installed=False,
            stop_response=httpx.Response(403, json={"error": {"message": "forbidden"}}),
        )

        assert cascade.run() is True
        assert events == ["rest", "systemctl"]
        assert runner.calls == [["systemctl", "poweroff"]]

    def test_metadata_outage_falls_through_to_poweroff(self):
        events: list[str] = []
        cascade, runner = _cascade(events, metadata_up=False)

        assert cascade.run() is True
        assert runner.calls == [["systemctl", "poweroff"]]


class TestRestApiStop:
    @pytest.mark.parametrize("status", ["DONE", "PENDING", "RUNNING"])
    def test_accepted_operation_body(self, status):
        events: list[str] = []
        http = httpx.Client(transport=_transport(events, stop_response=httpx.Response(202, json={"status": status})))
        assert RestApiStop(MetadataServer(http), http).attempt() is True

    def test_non_json_error(self):
        http = httpx.Client(transport=_transport([], stop_response=httpx.Response(500, text="oops")))
        assert RestApiStop(MetadataServer(http), http).attempt() is False


class TestLocalPowerOff:
    def test_falls_back_to_shutdown(self):
        runner = FakeRunner({"systemctl poweroff": CommandResult(1, "", "no systemd")})
        assert LocalPowerOff(runner).attempt() is True
        assert runner.calls == [["systemctl", "poweroff"], ["shutdown", "-h", "now"]]


class TestShutdownCascade:
    def test_all_failing(self):
        class Never:
            name = "never"

            def attempt(self) -> bool:
                return False

        class Boom:
            name = "boom"

            def attempt(self) -> bool:
                raise RuntimeError("kaput")

        assert ShutdownCascade([Boom(), Never()]).run() is False
