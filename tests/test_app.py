# =============================================================================
# Command Line Tests
# =============================================================================

import pytest

from mailcheck import app
from mailcheck import config as config_module
from mailcheck.config import Config
from mailcheck.core import FetchedMessage, OutgoingMessage
from mailcheck.protocol import ProtocolError
from mailcheck.roundtrip import RoundTripResult


@pytest.fixture
def config_file(tmp_path, sample_account, monkeypatch):
    path = tmp_path / "config.toml"
    Config(default_account="test", accounts={"test": sample_account}).save(path)
    monkeypatch.setattr(config_module.keyring, "get_password", lambda service, user: "pw")
    return path


def fake_round_trip(calls, *, matched=True, error=None):
    async def run(account, credentials, unique_id, *, settings=None, **kwargs):
        calls.append((account, credentials, unique_id, settings))
        if error is not None:
            raise error
        sent = OutgoingMessage.probe(account.email, unique_id)
        body = sent.body_text if matched else "something else"
        received = FetchedMessage(subject=sent.subject, body_text=body, sequence_number=1)
        return RoundTripResult(via=settings.retrieve_via, sent=sent, received=received)
    return run


def test_paths(capsys):
    assert app.main(["--paths"]) == 0
    assert "config.toml" in capsys.readouterr().out


def test_init_writes_example(tmp_path):
    path = tmp_path / "new" / "config.toml"
    assert app.main(["--init", "--config", str(path)]) == 0

    config = Config.load(path)
    assert config.default_account == "example"
    assert config.accounts["example"].smtp_host == "smtp.example.com"


def test_init_refuses_to_overwrite(config_file):
    before = config_file.read_bytes()
    assert app.main(["--init", "--config", str(config_file)]) == app.EXIT_CONFIG
    assert config_file.read_bytes() == before


def test_match(config_file, monkeypatch, capsys):
    calls = []
    monkeypatch.setattr(app, "run_round_trip", fake_round_trip(calls))

    code = app.main(["--config", str(config_file), "--id", "1700000000000"])

    assert code == app.EXIT_OK
    account, credentials, unique_id, settings = calls[0]
    assert account.name == "test"
    assert credentials.secret == "pw"
    assert unique_id == "1700000000000"
    assert settings.retrieve_via == "imap"
    assert settings.delete_after_fetch
    assert "MATCH" in capsys.readouterr().out


def test_options_override_settings(config_file, monkeypatch):
    calls = []
    monkeypatch.setattr(app, "run_round_trip", fake_round_trip(calls))

    app.main(["--config", str(config_file), "--via", "pop3", "--keep"])

    settings = calls[0][3]
    assert settings.retrieve_via == "pop3"
    assert not settings.delete_after_fetch


def test_default_id_is_a_timestamp(config_file, monkeypatch):
    calls = []
    monkeypatch.setattr(app, "run_round_trip", fake_round_trip(calls))
    app.main(["--config", str(config_file)])
    assert calls[0][2].isdigit()


def test_mismatch(config_file, monkeypatch, capsys):
    monkeypatch.setattr(app, "run_round_trip", fake_round_trip([], matched=False))
    assert app.main(["--config", str(config_file)]) == app.EXIT_MISMATCH
    assert "MISMATCH" in capsys.readouterr().out


def test_protocol_failure(config_file, monkeypatch, capsys):
    error = ProtocolError("RCPT TO failed", stage="RCPT TO", code=550)
    monkeypatch.setattr(app, "run_round_trip", fake_round_trip([], error=error))

    assert app.main(["--config", str(config_file)]) == app.EXIT_PROTOCOL
    assert "[RCPT TO]" in capsys.readouterr().err


def test_unknown_account(config_file, capsys):
    assert app.main(["--config", str(config_file), "--account", "nope"]) == app.EXIT_CONFIG
    assert "Unknown account" in capsys.readouterr().err


def test_invalid_setting_exits_with_config_error(tmp_path, capsys):
    path = tmp_path / "config.toml"
    path.write_text('[check]\ntimeout_seconds = "soon"\n')

    assert app.main(["--config", str(path)]) == app.EXIT_CONFIG
    assert "check.timeout_seconds" in capsys.readouterr().err
