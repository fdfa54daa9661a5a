import json

import pytest

from order_printer.core.config import (
    ConfigError,
    default_config_path,
    get_config_path,
    load_config,
    load_settings,
    load_store_settings,
)


def test_env_settings_with_defaults():
    s = load_settings({}, env={"ORDERPRINTER_PRINTER_HOST": "192.168.15.31"})
    assert s.printer.host == "192.168.15.31"
    assert s.printer.port == 9100
    assert s.printer.timeout == 10.0
    assert s.ticket.encoding == "iso8859-1"
    assert s.ticket.language == "pt"
    assert s.ticket.timezone is None
    assert s.store.rescan_interval == 60.0
    assert s.json_logs is False


def test_legacy_env_names_are_accepted():
    s = load_settings({}, env={"PRINTER_IP": "10.0.0.2", "PRINTER_PORT": "9101"})
    assert (s.printer.host, s.printer.port) == ("10.0.0.2", 9101)


def test_env_wins_over_file():
    cfg = {"printer_host": "file-host", "printer_port": 9200, "ticket_language": "en"}
    s = load_settings(cfg, env={"ORDERPRINTER_PRINTER_HOST": "env-host"})
    assert s.printer.host == "env-host"
    assert s.printer.port == 9200
    assert s.ticket.language == "en"


def test_missing_host_is_fatal():
    with pytest.raises(ConfigError, match="host"):
        load_settings({}, env={})
    with pytest.raises(ConfigError):
        load_settings({"printer_host": "   "}, env={})


@pytest.mark.parametrize("port", ["0", "-1", "abc", "70000", "9100.5"])
def test_bad_port_is_fatal(port):
    with pytest.raises(ConfigError, match="port"):
        load_settings({}, env={"ORDERPRINTER_PRINTER_HOST": "h", "ORDERPRINTER_PRINTER_PORT": port})


def test_bad_timeout_is_fatal():
    with pytest.raises(ConfigError):
        load_settings({}, env={"ORDERPRINTER_PRINTER_HOST": "h", "ORDERPRINTER_PRINTER_TIMEOUT": "0"})


def test_rescan_can_be_disabled():
    s = load_settings({}, env={"ORDERPRINTER_PRINTER_HOST": "h", "ORDERPRINTER_RESCAN_INTERVAL": "0"})
    assert s.store.rescan_interval == 0


def test_ticket_encoding_must_be_single_byte():
    env = {"ORDERPRINTER_PRINTER_HOST": "h"}
    assert load_settings({}, env={**env, "ORDERPRINTER_TICKET_ENCODING": "cp850"}).ticket.encoding == "cp850"
    with pytest.raises(ConfigError):
        load_settings({}, env={**env, "ORDERPRINTER_TICKET_ENCODING": "utf-8"})
    with pytest.raises(ConfigError):
        load_settings({}, env={**env, "ORDERPRINTER_TICKET_ENCODING": "no-such-codec"})


def test_unknown_language_is_fatal():
    with pytest.raises(ConfigError):
        load_settings({}, env={"ORDERPRINTER_PRINTER_HOST": "h", "ORDERPRINTER_TICKET_LANGUAGE": "fr"})


def test_ticket_time_zone():
    env = {"ORDERPRINTER_PRINTER_HOST": "h"}
    assert load_settings({}, env={**env, "ORDERPRINTER_TICKET_TIMEZONE": "UTC"}).ticket.timezone == "UTC"
    with pytest.raises(ConfigError, match="Unknown ticket time zone"):
        load_settings({}, env={**env, "ORDERPRINTER_TICKET_TIMEZONE": "Mars/Olympus"})


def test_json_logs_flag():
    s = load_settings({}, env={"ORDERPRINTER_PRINTER_HOST": "h", "ORDERPRINTER_JSON_LOGS": "true"})
    assert s.json_logs is True


def test_header_lines_from_file():
    s = load_settings({"printer_host": "h", "header_lines": ["BAR DO ZE"]}, env={})
    assert s.ticket.header_lines == ("BAR DO ZE",)


def test_store_settings_do_not_need_a_printer(tmp_path):
    db = str(tmp_path / "x.db")
    s = load_store_settings({}, env={"ORDERPRINTER_DB_PATH": db, "ORDERPRINTER_POLL_INTERVAL": "0.5"})
    assert s.db_path == db
    assert s.poll_interval == 0.5


def test_config_path_resolution(tmp_path, monkeypatch):
    monkeypatch.delenv("ORDERPRINTER_CONFIG_PATH", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert default_config_path() == str(tmp_path / "orderprinter" / "config.json")
    monkeypatch.setenv("ORDERPRINTER_CONFIG_PATH", str(tmp_path / "custom.json"))
    assert get_config_path() == str(tmp_path / "custom.json")


def test_load_config_missing_and_present(tmp_path):
    path = tmp_path / "config.json"
    assert load_config(str(path)) is None
    path.write_text(json.dumps({"printer_host": "h"}))
    assert load_config(str(path)) == {"printer_host": "h"}


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_malformed_config_file_is_config_error(tmp_path, monkeypatch, content):
    path = tmp_path / "config.json"
    path.write_text(content)
    monkeypatch.setenv("ORDERPRINTER_CONFIG_PATH", str(path))

    with pytest.raises(ConfigError, match="Invalid config file"):
        load_settings(env={"ORDERPRINTER_PRINTER_HOST": "h"})
    with pytest.raises(ConfigError, match="Invalid config file"):
        load_store_settings(env={})


def test_load_settings_reads_config_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"printer_host": "from-file"}))
    monkeypatch.setenv("ORDERPRINTER_CONFIG_PATH", str(path))
    s = load_settings(env={})
    assert s.printer.host == "from-file"
