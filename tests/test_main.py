import pytest

from approver_bot.main import build_parser, get_mode_name


@pytest.mark.parametrize("argv, mode", [
    ([], "SERVE"),
    (["--approve"], "APPROVE"),
    (["--approve-fast", "--ts", "1709553600"], "APPROVE-FAST"),
    (["--status"], "STATUS"),
    (["--health"], "HEALTH"),
])
def test_mode_selection(argv, mode):
    assert get_mode_name(build_parser().parse_args(argv)) == mode


def test_modes_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--approve", "--status"])


def test_defaults():
    args = build_parser().parse_args(["--log-level", "DEBUG"])
    assert args.log_level == "DEBUG"
    assert args.ts is None


def test_missing_credentials_rejected(monkeypatch):
    from approver_bot import config

    monkeypatch.setattr(config, "EMAIL", "")
    with pytest.raises(ValueError):
        config.validate_credentials()

    monkeypatch.setattr(config, "EMAIL", "a@b.c")
    monkeypatch.setattr(config, "PASSWORD", "pw")
    assert config.validate_credentials() is True


def test_serve_mode_uses_the_module_app(monkeypatch):
    from approver_bot import main, server

    served = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: served.append((app, kwargs)))

    main.serve_mode(9090)

    assert served[0][0] is server.app
    assert served[0][1]["port"] == 9090
