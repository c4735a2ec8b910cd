"""Tests for the public package surface."""

from __future__ import annotations

import importlib

import pytest

import opql


def test_version():
    assert opql.__version__ == "0.4.0"


@pytest.mark.parametrize("name", opql.__all__)
def test_exports_resolve(name):
    assert getattr(opql, name) is not None


@pytest.mark.parametrize(
    "module",
    ["opql.cursor", "opql.suggest", "opql.jql", "opql.offline.index", "opql.cli"],
)
def test_modules_import(module):
    assert importlib.import_module(module) is not None


def test_cursor_walk_defaults_are_independent():
    from opql.cursor import _Walk

    first, second = _Walk(), _Walk()
    first.groups.append("status")
    assert second.groups == []
