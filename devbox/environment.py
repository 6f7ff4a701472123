"""Local preflight checks before touching any cloud resource."""

from __future__ import annotations

import shlex
import shutil
from collections.abc import Callable

from loguru import logger

from devbox import shell
from devbox.errors import PreconditionError
from devbox.shell import Runner

log = logger.bind(component="environment")

REQUIRED_APIS = ("compute.googleapis.com", "iap.googleapis.com")
SDK_INSTALL_URL = "https://cloud.google.com/sdk/docs/install"


def validate_environment(
    project: str,
    runner: Runner = shell.run,
    which: Callable[[str], str | None] = shutil.which,
) -> str:
    """Check the gcloud CLI, the active account, the project and required APIs.

    APIs that are not yet enabled get enabled on the spot.

    Returns:
        The active account.

    Raises:
        PreconditionError: Anything is missing and could not be fixed.
    """
    if which("gcloud") is None:
        raise PreconditionError("gcloud CLI not found", remedy=f"Install the Google Cloud SDK: {SDK_INSTALL_URL}")

    auth = runner(["gcloud", "auth", "list", "--filter=status:ACTIVE", "--format=value(account)"], timeout=60)
    account = auth.stdout.strip().splitlines()[0] if auth.success and auth.stdout.strip() else ""
    if not account:
        raise PreconditionError("No authenticated gcloud account", remedy="gcloud auth login")
    log.info("Authenticated as {account}", account=account)

    describe = runner(["gcloud", "projects", "describe", project, "--format=value(projectId)"], timeout=60)
    if not describe.success:
        raise PreconditionError(
            f"Project {project} is not accessible: {describe.stderr.strip()}",
            remedy=f"gcloud config set project {project}",
        )

    listed = runner(
        ["gcloud", "services", "list", "--enabled", f"--project={project}", "--format=value(config.name)"],
        timeout=120,
    )
    enabled = set(listed.stdout.split()) if listed.success else set()

    for api in REQUIRED_APIS:
        if api in enabled:
            continue
        log.info("Enabling {api}", api=api)
        enable = ["gcloud", "services", "enable", api, f"--project={project}"]
        result = runner(enable, timeout=300)
        if not result.success:
            raise PreconditionError(
                f"Could not enable {api}: {result.stderr.strip()}",
                remedy=shlex.join(enable),
            )

    return account
