import importlib
import runpy
import sys
import warnings

import pytest


def _clear_module_cache(module_name: str) -> None:
    for name in list(sys.modules):
        if name == module_name or name.startswith(f"{module_name}."):
            sys.modules.pop(name, None)


def test_run_cosignctl_as_main(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("sys.argv", ["cosignctl.py", "sign", "sha256:abc", "--dry-run"])
    with pytest.raises(SystemExit) as excinfo:
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            importlib.import_module("cosignctl")
            _clear_module_cache("cosignctl")
            runpy.run_module("cosignctl", run_name="__main__")
    assert excinfo.value.code == 0


def test_run_cosignctl_as_main_bad_usage(monkeypatch):
    monkeypatch.setattr("sys.argv", ["cosignctl.py"])
    with pytest.raises(SystemExit) as excinfo:
        _clear_module_cache("cosignctl")
        runpy.run_module("cosignctl", run_name="__main__")
    assert excinfo.value.code == 2
