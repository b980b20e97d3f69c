# test_imports.py
import importlib

import pytest


@pytest.mark.parametrize("module", [
    "tokentop.cli.main",
    "tokentop.config.loader",
    "tokentop.core.activity",
    "tokentop.core.aggregator",
    "tokentop.core.dashboard",
    "tokentop.core.models_dev",
    "tokentop.core.pricing",
    "tokentop.core.recorder",
    "tokentop.providers",
    "tokentop.sdk",
    "tokentop.storage.db",
    "tokentop.storage.repository",
])
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_public_names():
    from tokentop.core.activity import ActivityRateEstimator
    from tokentop.providers import builtin_providers
    from tokentop.sdk import RecordingOpenAI

    assert ActivityRateEstimator is not None
    assert RecordingOpenAI is not None
    assert len(builtin_providers()) == 2
