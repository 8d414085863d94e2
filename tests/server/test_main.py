import logging

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed")

from apps.server.main import _configure_logging, _load_engine_kwargs, _load_factory, _parse_args  # noqa: E402


@pytest.mark.parametrize(
    "log_level, expected",
    [
        ("trace", logging.DEBUG),
        ("debug", logging.DEBUG),
        ("warning", logging.WARNING),
    ],
)
def test_configure_logging_sets_package_level(log_level, expected):
    _configure_logging(log_level)

    assert logging.getLogger("streamgen").level == expected
    assert logging.getLogger("streamgen.engine.generation").getEffectiveLevel() == expected


def test_parse_args_defaults():
    args = _parse_args(["--engine", "pkg.mod:make"])

    assert args.port == 8787
    assert args.log_level == "info"
    assert not args.reject_when_busy


def test_load_factory_rejects_bad_spec():
    with pytest.raises(ValueError):
        _load_factory("no_colon_here")


def test_load_engine_kwargs_requires_object():
    assert _load_engine_kwargs('{"n_ctx": 512}') == {"n_ctx": 512}
    with pytest.raises(ValueError):
        _load_engine_kwargs("[1, 2]")
