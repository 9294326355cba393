"""
Changeflow: ID Generation Utilities

This module contains helper functions for generating unique identifiers
used throughout the system. Centralising ID generation ensures
consistency and makes it easier to change ID formats in future
iterations.

Key responsibilities:
- Generate UUID-based identifiers
- Provide run IDs for pipeline runs
- Provide lease owner IDs identifying a running instance

External dependencies:
- uuid: Standard library UUID generation
- socket / os: Host name and process id for owner identifiers

Database tables accessed:
- None (pure utility functions)

Thread safety: Thread-safe (stateless functions)

Author: Changeflow Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import os
import socket
import uuid
from typing import Optional

# ============================================================================
# Public API
# ============================================================================


def generate_uuid() -> str:
    """Generate a random UUIDv4 string.

    Returns:
        A UUID string in standard 8-4-4-4-12 hexadecimal format.
    """

    return str(uuid.uuid4())


def generate_run_id(prefix: Optional[str] = None) -> str:
    """Generate a unique run ID for a pipeline run.

    Args:
        prefix: Optional prefix to prepend to the UUID (e.g. "run",
            "rollback"). If provided, the returned ID will be of the form
            ``prefix_uuid``.

    Returns:
        A unique run identifier string.
    """

    base_id = generate_uuid()
    if prefix:
        return f"{prefix}_{base_id}"
    return base_id


def generate_owner_id(service_identifier: Optional[str] = None) -> str:
    """Generate a lease owner identifier for this process.

    The identifier embeds host name and process id so that operators can
    tell which instance holds the pipeline lock, plus a short random
    suffix so that two executors in the same process never share an
    owner.

    Args:
        service_identifier: Optional logical service name used as prefix.

    Returns:
        A string of the form ``[service@]host:pid:suffix``.
    """

    host = socket.gethostname()
    suffix = uuid.uuid4().hex[:8]
    owner = f"{host}:{os.getpid()}:{suffix}"
    if service_identifier:
        return f"{service_identifier}@{owner}"
    return owner
