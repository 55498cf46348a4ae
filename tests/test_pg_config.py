"""Unit-tests for the idempotent ``postgresql.conf`` patch helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from pgwrapper import pg_config


def _preload_values(path: Path) -> list[str]:
    return [
        line
        for line in path.read_text().splitlines()
        if line.strip().startswith("shared_preload_libraries")
    ]


# ---------------------------------------------------------------------------
#  parse_directive
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("shared_preload_libraries = 'timescaledb'", "timescaledb"),
        ('shared_preload_libraries = "timescaledb,pg_cron"', "timescaledb,pg_cron"),
        ("shared_preload_libraries = timescaledb", "timescaledb"),
        ("shared_preload_libraries=timescaledb  # trailing comment", "timescaledb"),
        ("  shared_preload_libraries = 'a, b'   # comment with 'quotes'", "a, b"),
        ("shared_preload_libraries = ''", ""),
    ],
)
def test_parse_directive_value_forms(line, expected):
    assert pg_config.parse_directive(line + "\n", "shared_preload_libraries") == expected


def test_parse_directive_ignores_comments_and_other_keys():
    content = (
        "#shared_preload_libraries = 'commented'\n"
        "  # shared_preload_libraries = 'also commented'\n"
        "shared_preload_libraries_extra = 'other'\n"
        "max_connections = 100\n"
    )
    assert pg_config.parse_directive(content, "shared_preload_libraries") is None


def test_parse_directive_last_occurrence_wins():
    content = (
        "shared_preload_libraries = 'first'\n"
        "work_mem = 4MB\n"
        "shared_preload_libraries = 'second,third'\n"
        "#shared_preload_libraries = 'ignored'\n"
    )
    assert pg_config.parse_directive(content, "shared_preload_libraries") == "second,third"


def test_read_directive_missing_file(tmp_path):
    assert pg_config.read_directive(tmp_path / "nope.conf", "port") is None


# ---------------------------------------------------------------------------
#  add_preload_library
# ---------------------------------------------------------------------------


def test_add_preload_library_without_existing_list(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("max_connections = 100\n")

    assert pg_config.add_preload_library(conf) is True

    assert conf.read_text().splitlines()[-1] == "shared_preload_libraries = 'pg_stat_statements'"


def test_add_preload_library_extends_last_assignment(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text(
        "shared_preload_libraries = 'old'\n"
        "shared_preload_libraries = 'timescaledb,pg_cron'\n"
    )

    pg_config.add_preload_library(conf)

    assert conf.read_text().splitlines()[-1] == (
        "shared_preload_libraries = 'timescaledb,pg_cron,pg_stat_statements'"
    )


def test_add_preload_library_appends_on_fresh_line(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("max_connections = 100")  # no trailing newline

    pg_config.add_preload_library(conf)

    assert conf.read_text().splitlines() == [
        "max_connections = 100",
        "shared_preload_libraries = 'pg_stat_statements'",
    ]


@pytest.mark.parametrize(
    "initial",
    [
        "shared_preload_libraries = 'timescaledb'\n",
        "shared_preload_libraries = timescaledb\n",
        "shared_preload_libraries = ''\n",
        'shared_preload_libraries = "pg_cron,timescaledb"\n',
        "max_connections = 100\n",
    ],
)
def test_add_preload_library_twice_adds_library_once(tmp_path, initial):
    conf = tmp_path / "postgresql.conf"
    conf.write_text(initial)

    pg_config.add_preload_library(conf)
    assert pg_config.add_preload_library(conf) is False

    value = pg_config.read_directive(conf, "shared_preload_libraries")
    assert value.split(",").count("pg_stat_statements") == 1
    assert len(_preload_values(conf)) == initial.count("shared_preload_libraries") + 1


# ---------------------------------------------------------------------------
#  ensure_preload_library
# ---------------------------------------------------------------------------


def test_ensure_preload_library_skips_uninitialised_cluster(tmp_path):
    assert pg_config.ensure_preload_library(tmp_path) is False
    assert not (tmp_path / "postgresql.conf").exists()


def test_ensure_preload_library_is_idempotent(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("shared_preload_libraries = 'timescaledb'\n")

    assert pg_config.ensure_preload_library(tmp_path) is True
    first = conf.read_text()
    assert pg_config.ensure_preload_library(tmp_path) is False

    assert conf.read_text() == first
    assert first.count("pg_stat_statements") == 1


def test_ensure_preload_library_respects_commented_mention(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("# pg_stat_statements disabled on purpose\n")

    assert pg_config.ensure_preload_library(tmp_path) is False


def test_ensure_preload_library_patches_overriding_auto_conf(tmp_path):
    (tmp_path / "postgresql.conf").write_text("max_connections = 100\n")
    auto = tmp_path / "postgresql.auto.conf"
    auto.write_text("# Do not edit this file manually!\nshared_preload_libraries = 'pg_cron'\n")

    pg_config.ensure_preload_library(tmp_path)

    assert pg_config.read_directive(auto, "shared_preload_libraries") == "pg_cron,pg_stat_statements"


def test_ensure_preload_library_leaves_auto_conf_without_directive(tmp_path):
    (tmp_path / "postgresql.conf").write_text("max_connections = 100\n")
    auto = tmp_path / "postgresql.auto.conf"
    auto.write_text("# Do not edit this file manually!\nwork_mem = '8MB'\n")

    pg_config.ensure_preload_library(tmp_path)

    assert "pg_stat_statements" not in auto.read_text()


def test_ensure_preload_library_leaves_auto_conf_already_mentioning(tmp_path):
    (tmp_path / "postgresql.conf").write_text("max_connections = 100\n")
    auto = tmp_path / "postgresql.auto.conf"
    original = "shared_preload_libraries = 'pg_stat_statements,pg_cron'\n"
    auto.write_text(original)

    pg_config.ensure_preload_library(tmp_path)

    assert auto.read_text() == original


# ---------------------------------------------------------------------------
#  JSON logging / idle timeout / log reset
# ---------------------------------------------------------------------------


def test_ensure_json_logging_appends_block_once(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("max_connections = 100\n")

    assert pg_config.ensure_json_logging(conf) is True
    assert pg_config.ensure_json_logging(conf) is False

    text = conf.read_text()
    assert text.count("log_destination = 'jsonlog'") == 1
    assert text.count("idle_session_timeout = '10min'") == 1
    for directive in (
        "logging_collector = on",
        "log_directory = 'log'",
        "log_filename = 'postgresql'",
        "log_rotation_age = 0",
        "log_rotation_size = 1MB",
        "log_truncate_on_rotation = on",
        "log_min_duration_statement = 300",
    ):
        assert directive in text.splitlines()


def test_ensure_json_logging_requires_exact_marker(tmp_path):
    conf = tmp_path / "postgresql.conf"
    # Older images logged to 'postgresql.json' - not our marker.
    conf.write_text("log_filename = 'postgresql.json'\n")

    assert pg_config.ensure_json_logging(conf) is True


def test_ensure_json_logging_missing_file(tmp_path):
    assert pg_config.ensure_json_logging(tmp_path / "postgresql.conf") is False


def test_idle_timeout_added_for_previously_configured_logging(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("logging_collector = on\nlog_filename = 'postgresql'\n")

    assert pg_config.ensure_json_logging(conf) is False
    assert pg_config.ensure_idle_session_timeout(conf) is True
    assert pg_config.ensure_idle_session_timeout(conf) is False

    assert conf.read_text().count("idle_session_timeout = '10min'") == 1


def test_configure_logging_twice_is_noop(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("max_connections = 100\n")

    pg_config.configure_logging(tmp_path)
    first = conf.read_text()
    pg_config.configure_logging(tmp_path)

    assert conf.read_text() == first
    assert first.count("idle_session_timeout") == 1


def test_reset_log_file_truncates_existing(tmp_path):
    log_file = pg_config.json_log_file(tmp_path)
    log_file.parent.mkdir()
    log_file.write_text("2024-01-01 00:00:00 UTC LOG:  plain text entry\n")

    assert pg_config.reset_log_file(log_file) is True
    assert log_file.read_text() == ""


def test_reset_log_file_missing(tmp_path):
    log_file = pg_config.json_log_file(tmp_path)

    assert pg_config.reset_log_file(log_file) is False
    assert not log_file.exists()


# ---------------------------------------------------------------------------
#  Non UTF-8 content
# ---------------------------------------------------------------------------


def test_latin1_comment_does_not_break_patching(tmp_path):
    conf = tmp_path / "postgresql.conf"
    original = b"# Konfiguration f\xfcr Produktion\nmax_connections = 100\n"
    conf.write_bytes(original)

    assert pg_config.ensure_preload_library(tmp_path) is True
    pg_config.configure_logging(tmp_path)
    pg_config.configure_logging(tmp_path)

    data = conf.read_bytes()
    assert data.startswith(original)
    assert data.count(b"pg_stat_statements") == 1
    assert data.count(b"log_filename = 'postgresql'") == 1


def test_latin1_preload_value_is_preserved(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_bytes(b"shared_preload_libraries = 'b\xe4r'  # \xfc\n")

    pg_config.add_preload_library(conf)

    assert conf.read_bytes().splitlines()[-1] == b"shared_preload_libraries = 'b\xe4r,pg_stat_statements'"


def test_ensure_preload_library_reports_unchanged_file(tmp_path, monkeypatch):
    (tmp_path / "postgresql.conf").write_text("max_connections = 100\n")
    monkeypatch.setattr(pg_config, "add_preload_library", lambda path, library: False)

    assert pg_config.ensure_preload_library(tmp_path) is False
