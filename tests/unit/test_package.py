"""Unit tests for package metadata."""

import importlib
from importlib.metadata import PackageNotFoundError, version

import pytest

import receiptsync

pytestmark = pytest.mark.unit


def test_version_from_distribution():
    assert receiptsync.__version__ == version("receiptsync")


def test_version_unknown_when_not_installed(mocker):
    mocker.patch("importlib.metadata.version", side_effect=PackageNotFoundError("receiptsync"))
    try:
        assert importlib.reload(receiptsync).__version__ == "unknown"
    finally:
        mocker.stopall()
        importlib.reload(receiptsync)
