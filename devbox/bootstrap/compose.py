"""Bootstrap script composition.

Core types and composition functions for the declarative first-boot DSL.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Final

from devbox.constants import STARTUP_LOG

# =============================================================================
# Core Types
# =============================================================================

type Op = str | Callable[[], str] | list[Op]
"""Operation type: a literal string, a function returning a string, or a list of ops."""


def resolve(op: Op | None) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case str(op):
            return op
        case list(op):
            return "\n".join(resolve(o) for o in op)
        case None:
            return ""
        case _:
            return op()


# =============================================================================
# Header
# =============================================================================

RETRY_ATTEMPTS: Final = 3
RETRY_BACKOFF: Final = 5

HEADER: Final = f"""#!/bin/bash
# devbox first-boot provisioning

# Duplicate all console output to the startup log (append, never truncate)
exec > >(tee -a {STARTUP_LOG}) 2>&1

export DEBIAN_FRONTEND=noninteractive

echo "=== devbox provisioning started at $(date) ==="

retry_command() {{
    local max_attempts={RETRY_ATTEMPTS}
    local delay={RETRY_BACKOFF}
    local attempt=1
    while [ $attempt -le $max_attempts ]; do
        if "$@"; then
            return 0
        fi
        echo "Attempt $attempt/$max_attempts failed: $*"
        if [ $attempt -lt $max_attempts ]; then
            sleep $delay
        fi
        attempt=$((attempt + 1))
    done
    return 1
}}

"""


# =============================================================================
# Composition
# =============================================================================


def bootstrap(*ops: Op | None, header: str = HEADER) -> str:
    """Compose operations into a complete first-boot script.

    Args:
        *ops: Operations to compose, in execution order.
        header: Script prelude. Defaults to :data:`HEADER` which sets up
            output teeing and the ``retry_command`` helper used by ops.

    Example:
        >>> script = bootstrap(
        ...     wait_for_network(),
        ...     install_git(),
        ... )
    """
    commands = [resolve(op) for op in ops if op is not None]
    return header + "\n\n".join(commands) + "\n"
