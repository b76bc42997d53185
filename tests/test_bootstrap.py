import os

from scripts.bootstrap import load_dotenv, parse_env_line


def test_parse_env_line():
    assert parse_env_line("# comment") is None
    assert parse_env_line("   ") is None
    assert parse_env_line("NO_EQUALS") is None
    assert parse_env_line("export FLASK_PORT=9000") == ("FLASK_PORT", "9000")
    assert parse_env_line("MAIL_PASSWORD='a #b'") == ("MAIL_PASSWORD", "a #b")
    assert parse_env_line("LOG_LEVEL=debug # verbose") == ("LOG_LEVEL", "debug")


def test_load_dotenv_keeps_existing_values(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("ORBITA_TEST_A=from-file\nORBITA_TEST_B=\"quoted\"\n", encoding="utf-8")
    monkeypatch.setenv("ORBITA_TEST_A", "from-env")
    monkeypatch.delenv("ORBITA_TEST_B", raising=False)

    assert load_dotenv(env_file) == 1
    assert load_dotenv(tmp_path / "missing.env") == 0

    assert os.environ["ORBITA_TEST_A"] == "from-env"
    assert os.environ["ORBITA_TEST_B"] == "quoted"

    load_dotenv(env_file, override=True)
    assert os.environ["ORBITA_TEST_A"] == "from-file"
