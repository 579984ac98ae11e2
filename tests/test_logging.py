from __future__ import annotations

import logging

from batchcheck.logging import ROOT_LOGGER, _coerce_level, get_logger


def test_child_loggers_share_the_package_handlers() -> None:
    first = get_logger("productdb-db")
    second = get_logger("productdb-service")
    get_logger("productdb-db")

    root = logging.getLogger(ROOT_LOGGER)
    assert first.name == "batchcheck.productdb-db"
    assert first.handlers == [] and second.handlers == []
    assert first.propagate and second.propagate
    assert first.parent is root
    assert root.propagate is False
    assert sum(type(h) is logging.StreamHandler for h in root.handlers) == 1


def test_level_names_are_case_insensitive_with_info_fallback() -> None:
    assert _coerce_level(" debug ") == logging.DEBUG
    assert _coerce_level("warn") == logging.WARNING
    assert _coerce_level("chatty") == logging.INFO
    assert _coerce_level(None) == logging.INFO
    assert _coerce_level("") == logging.INFO
