"""
Changeflow: Core Type Definitions

This module defines common type aliases shared across the Changeflow
codebase. It exists to centralise frequently used type definitions and
avoid circular imports between higher-level modules.

Key responsibilities:
- Provide canonical aliases for metadata and error payload mappings
- Improve readability of function signatures

External dependencies:
- typing: Standard library typing primitives only

Database tables accessed:
- None (pure type definitions)

Thread safety: Thread-safe (no mutable global state)

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

from typing import Any, Dict, Mapping, TypeAlias

# ============================================================================
# Type Aliases
# ============================================================================

# Read-only configuration mapping (for function parameters that should not mutate)
ReadonlyConfig: TypeAlias = Mapping[str, Any]

# Generic metadata mapping for attaching arbitrary structured data to records
MetadataDict: TypeAlias = Dict[str, Any]

# Serialised error payload as stored in audit rows and pipeline results
ErrorDict: TypeAlias = Dict[str, Any]
