from __future__ import annotations

import builtins
import importlib

import pytest


@pytest.mark.core
def test_conversion_core_has_no_web_framework_imports() -> None:
    real_import = builtins.__import__

    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if name.split(".")[0] in {"fastapi", "starlette", "uvicorn"}:
            raise AssertionError(f"Web framework import detected in core: {name}")
        return real_import(name, globals, locals, fromlist, level)

    builtins.__import__ = guarded_import
    try:
        importlib.import_module("openvac_core.conversion")
        importlib.import_module("openvac_core.workspace")
        importlib.import_module("openvac_core.frames")
        importlib.import_module("openvac_core.preview")
        importlib.import_module("openvac_core.jobs")
    finally:
        builtins.__import__ = real_import
