# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin and other framework integrations.
"""

from secretgc.integrations.fastapi import (
    setup_secretgc_plugin,
    register_secretgc_routes,
    secretgc_lifespan,
    verify_api_key,
)

__all__ = [
    "setup_secretgc_plugin",
    "register_secretgc_routes",
    "secretgc_lifespan",
    "verify_api_key",
]
