from __future__ import annotations

import pytest

from devbox.environment import validate_environment
from devbox.errors import PreconditionError
from devbox.shell import CommandResult

from tests.fakes import FakeRunner

ENABLED = "compute.googleapis.com\niap.googleapis.com\nstorage.googleapis.com\n"


def _which(name: str) -> str | None:
    return f"/usr/bin/{name}"


def _runner(**overrides: CommandResult) -> FakeRunner:
    responses = {
        "gcloud auth list": CommandResult(0, "alice@example.com\n"),
        "gcloud projects describe": CommandResult(0, "my-project\n"),
        "gcloud services list": CommandResult(0, ENABLED),
    }
    responses.update({k.replace("_", " "): v for k, v in overrides.items()})
    return FakeRunner(responses)


class TestValidateEnvironment:
    def test_ready_environment(self):
        runner = _runner()

        assert validate_environment("my-project", runner, which=_which) == "alice@example.com"
        assert not any(c.startswith("gcloud services enable") for c in runner.commands())

    def test_missing_gcloud(self):
        with pytest.raises(PreconditionError, match="gcloud CLI not found") as exc:
            validate_environment("my-project", FakeRunner(), which=lambda _: None)
        assert "cloud.google.com/sdk" in exc.value.remedy

    def test_not_logged_in(self):
        runner = _runner(gcloud_auth_list=CommandResult(0, ""))
        with pytest.raises(PreconditionError, match="No authenticated") as exc:
            validate_environment("my-project", runner, which=_which)
        assert exc.value.remedy == "gcloud auth login"

    def test_inaccessible_project(self):
        runner = _runner(gcloud_projects_describe=CommandResult(1, "", "PERMISSION_DENIED"))
        with pytest.raises(PreconditionError, match="PERMISSION_DENIED"):
            validate_environment("my-project", runner, which=_which)

    def test_enables_missing_apis(self):
        runner = _runner(gcloud_services_list=CommandResult(0, "compute.googleapis.com\n"))

        validate_environment("my-project", runner, which=_which)

        enabled = [c for c in runner.commands() if c.startswith("gcloud services enable")]
        assert enabled == ["gcloud services enable iap.googleapis.com --project=my-project"]

    def test_enable_failure_carries_command(self):
        runner = _runner(
            gcloud_services_list=CommandResult(0, ""),
            gcloud_services_enable=CommandResult(1, "", "billing disabled"),
        )
        with pytest.raises(PreconditionError, match="billing disabled") as exc:
            validate_environment("my-project", runner, which=_which)
        assert exc.value.remedy == "gcloud services enable compute.googleapis.com --project=my-project"
