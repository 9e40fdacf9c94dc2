"""Console entry point."""

from collections.abc import Iterator
from unittest.mock import patch

import pytest

from leornian.cli import main
from leornian.config import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_exits_without_jwt_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEORNIAN_JWT_SECRET", "")
    with patch("leornian.cli.uvicorn.run") as run, pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 1
    run.assert_not_called()


def test_exits_without_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEORNIAN_DATABASE_URL", "")
    with patch("leornian.cli.uvicorn.run") as run, pytest.raises(SystemExit):
        main()
    run.assert_not_called()


def test_serves_app_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEORNIAN_PORT", "9090")
    with patch("leornian.cli.uvicorn.run") as run:
        main()
    args, kwargs = run.call_args
    assert args == ("leornian.main:create_app",)
    assert kwargs["factory"] is True
    assert kwargs["port"] == 9090
    assert kwargs["ws_ping_interval"] == 30.0
    assert kwargs["timeout_graceful_shutdown"] == 10
