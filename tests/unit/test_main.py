import pytest

from connector_plane.main import parse_args, run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Supported roles" in captured.err
    assert "Try one of:" in captured.err


@pytest.mark.unit
@pytest.mark.parametrize("role", ["api", "worker-pump", "worker-guardian", "worker-drafts"])
def test_cli_dry_run_succeeds_for_valid_role(role: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    exit_code = run(["--role", role, "--dry-run-startup"])
    assert exit_code == 0


@pytest.mark.unit
def test_cli_dry_run_fails_on_invalid_dispatcher_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("CONNECTOR_DISPATCHER_MODE", "carrier-pigeon")

    with pytest.raises(ValueError, match="CONNECTOR_DISPATCHER_MODE"):
        run(["--role", "api", "--dry-run-startup"])


@pytest.mark.unit
def test_cli_port_defaults_are_left_to_role(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_HOST", "127.0.0.1")

    args = parse_args(["--role", "worker-pump"])

    assert args.port is None
    assert args.host == "127.0.0.1"
    assert args.reload is False
