"""Tests for the metawatch-scan / metawatch-report command-line interface."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from metawatch import cli
from metawatch.cli_config import load_config
from metawatch.cli_output import format_duplicates, format_history, format_tree, write_output
from metawatch.models import ChangeEvent, ChangeEventType, PageStatus
from metawatch.scan import Scanner
from metawatch.tree import build_url_tree

from .conftest import GOOD_META, SITEMAP, FakeFetcher, FakeResolver, RecordingSleep, html_page

A = "https://shop.example.com/a"
B = "https://shop.example.com/b"


@pytest.fixture(autouse=True)
def _no_config(monkeypatch):
    monkeypatch.setattr(cli, "_load_config", lambda: None)


@pytest.fixture
def fake_site(monkeypatch):
    """Route every Scanner the CLI builds to canned pages."""
    fetcher = FakeFetcher({A: html_page("A", GOOD_META), B: html_page("B")})
    resolver = FakeResolver([A, B])

    def _scanner(backend, settings=None):
        return Scanner(
            backend,
            settings,
            fetcher_factory=fetcher.factory,
            resolver=resolver,
            sleep=RecordingSleep(),
        )

    monkeypatch.setattr(cli, "Scanner", _scanner)
    return fetcher, resolver


# ---------------------------------------------------------------------------
# metawatch-scan
# ---------------------------------------------------------------------------


class TestScanCommand:
    def test_full_scan_prints_report(self, fake_site, tmp_path, capsys):
        code = cli.main([SITEMAP, "--data-dir", str(tmp_path)])

        assert code == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "SEO META DESCRIPTION ANALYSIS REPORT" in out
        assert "Total pages analyzed: 2" in out
        assert list(tmp_path.glob("scan-results-*.json"))
        assert list(tmp_path.glob("change-history-*.json"))

    def test_json_output_with_tree(self, fake_site, tmp_path, capsys):
        code = cli.main([SITEMAP, "--data-dir", str(tmp_path), "--json", "--tree"])

        assert code == cli.EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["summary"]["percentageWithMeta"] == 50
        assert data["tree"]["stats"]["total"] == 2

    def test_incremental_second_run_fetches_nothing(self, fake_site, tmp_path):
        fetcher, _ = fake_site
        cli.main([SITEMAP, "--data-dir", str(tmp_path)])
        calls = list(fetcher.calls)

        code = cli.main([SITEMAP, "--data-dir", str(tmp_path), "--mode", "incremental"])

        assert code == cli.EXIT_OK
        assert fetcher.calls == calls

    def test_selective_urls(self, fake_site, tmp_path):
        fetcher, resolver = fake_site
        code = cli.main([SITEMAP, "--data-dir", str(tmp_path), "--url", B])

        assert code == cli.EXIT_OK
        assert fetcher.calls == [B]
        assert resolver.calls == []

    def test_dry_run_writes_nothing(self, fake_site, tmp_path):
        code = cli.main([SITEMAP, "--data-dir", str(tmp_path), "--dry-run"])
        assert code == cli.EXIT_OK
        assert list(tmp_path.iterdir()) == []

    def test_output_file(self, fake_site, tmp_path):
        target = tmp_path / "out" / "report.txt"
        code = cli.main([SITEMAP, "--data-dir", str(tmp_path / "data"), "-o", str(target)])
        assert code == cli.EXIT_OK
        assert "DETAILED RESULTS:" in target.read_text(encoding="utf-8")

    def test_sitemap_error_exits_1(self, fake_site, tmp_path):
        _, resolver = fake_site
        resolver.error = "Failed to fetch sitemap: HTTP 500"
        assert cli.main([SITEMAP, "--data-dir", str(tmp_path)]) == cli.EXIT_ERROR

    def test_busy_exits_2(self, monkeypatch, tmp_path):
        def _busy_scanner(backend, settings=None):
            scanner = Scanner(backend, settings, fetcher_factory=FakeFetcher().factory)
            scanner.slot.claim("running")
            return scanner

        monkeypatch.setattr(cli, "Scanner", _busy_scanner)
        assert cli.main([SITEMAP, "--data-dir", str(tmp_path)]) == cli.EXIT_BUSY

    def test_interrupt_exits_130(self, monkeypatch, tmp_path):
        def _interrupt(coro):
            coro.close()
            raise KeyboardInterrupt

        monkeypatch.setattr(cli.asyncio, "run", _interrupt)
        assert cli.main([SITEMAP, "--data-dir", str(tmp_path)]) == cli.EXIT_INTERRUPTED

    def test_unexpected_error_exits_1(self, monkeypatch, tmp_path):
        def _broken(backend, settings=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(cli, "Scanner", _broken)
        assert cli.main([SITEMAP, "--data-dir", str(tmp_path), "-v"]) == cli.EXIT_ERROR

    def test_invalid_mode_rejected(self):
        with pytest.raises(SystemExit):
            cli.main([SITEMAP, "--mode", "selective"])


# ---------------------------------------------------------------------------
# metawatch-report
# ---------------------------------------------------------------------------


class TestReportCommand:
    def test_no_results(self, tmp_path):
        assert cli.report_main([SITEMAP, "--data-dir", str(tmp_path)]) == cli.EXIT_ERROR

    def test_csv_report(self, fake_site, tmp_path):
        cli.main([SITEMAP, "--data-dir", str(tmp_path)])
        target = tmp_path / "report.csv"

        code = cli.report_main(
            [SITEMAP, "--data-dir", str(tmp_path), "--format", "csv", "-o", str(target)]
        )

        assert code == cli.EXIT_OK
        lines = target.read_text(encoding="utf-8").splitlines()
        assert lines[0].startswith('"URL","Title","Has Meta Description"')
        assert len(lines) == 3

    def test_history_report(self, fake_site, tmp_path, capsys):
        cli.main([SITEMAP, "--data-dir", str(tmp_path)])
        capsys.readouterr()

        code = cli.report_main(
            [SITEMAP, "--data-dir", str(tmp_path), "--format", "history", "--url", A]
        )

        assert code == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "new_url" in out
        assert A in out
        assert B not in out

    def test_history_empty(self, tmp_path, capsys):
        code = cli.report_main([SITEMAP, "--data-dir", str(tmp_path), "--format", "history"])
        assert code == cli.EXIT_OK
        assert "No changes recorded." in capsys.readouterr().out

    @pytest.mark.parametrize(
        "report_format, expected",
        [
            ("summary", "SUMMARY:"),
            ("tree", "/ (2: 1 good, 0 warning, 1 error)"),
            ("duplicates", "No duplicate meta descriptions found."),
        ],
    )
    def test_text_formats(self, fake_site, tmp_path, capsys, report_format, expected):
        cli.main([SITEMAP, "--data-dir", str(tmp_path)])
        capsys.readouterr()

        code = cli.report_main(
            [SITEMAP, "--data-dir", str(tmp_path), "--format", report_format]
        )

        assert code == cli.EXIT_OK
        assert expected in capsys.readouterr().out

    def test_json_report(self, fake_site, tmp_path, capsys):
        cli.main([SITEMAP, "--data-dir", str(tmp_path)])
        capsys.readouterr()

        cli.report_main([SITEMAP, "--data-dir", str(tmp_path), "--format", "json"])

        data = json.loads(capsys.readouterr().out)
        assert data["summary"]["total"] == 2
        assert {item["url"] for item in data["results"]} == {A, B}


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


class TestOutputHelpers:
    def test_format_tree(self):
        from metawatch.models import PageResult

        root = build_url_tree(
            [
                PageResult(url="https://example.com/blog/b", status=PageStatus.good),
                PageResult(url="https://example.com/about", status=PageStatus.error),
            ]
        )
        assert format_tree(root).splitlines() == [
            "/ (2: 1 good, 0 warning, 1 error)",
            "  about (1: 0 good, 0 warning, 1 error)",
            "  blog (1: 1 good, 0 warning, 0 error)",
            "    b (1: 1 good, 0 warning, 0 error)",
        ]

    def test_format_history(self):
        event = ChangeEvent(
            url=A,
            change_type=ChangeEventType.meta_description,
            old_value="Old.",
            new_value=None,
            timestamp="2024-01-01T00:00:00Z",
        )
        text = format_history([event])
        assert "meta_description" in text
        assert "    - Old." in text
        assert "    + (none)" in text

    def test_format_duplicates(self):
        text = format_duplicates(
            {
                "duplicates": [{"description": "Same.", "count": 2, "urls": [A, B]}],
                "totalDuplicateGroups": 1,
                "affectedUrls": 2,
            }
        )
        assert text.startswith("1 duplicate group(s), 2 URL(s) affected")
        assert "1. (2 pages) Same." in text

    def test_write_output_stdout(self, capsys):
        write_output("hello", None)
        assert capsys.readouterr().out == "hello\n"


# ---------------------------------------------------------------------------
# .env discovery
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_example_file_ships_inside_package(self):
        assert (Path(cli.__file__).parent / ".env.example").is_file()

    def test_prefers_local_env(self, tmp_path):
        (tmp_path / ".env").write_text("A=1\n", encoding="utf-8")
        load_env = MagicMock()
        load_config(
            config_dir=tmp_path / "cfg",
            config_env_file=tmp_path / "cfg" / ".env",
            cwd=tmp_path,
            load_env=load_env,
            copy_file=MagicMock(),
        )
        load_env.assert_called_once_with(tmp_path / ".env")

    def test_falls_back_to_config_file(self, tmp_path):
        config_env = tmp_path / "cfg" / ".env"
        config_env.parent.mkdir()
        config_env.write_text("A=1\n", encoding="utf-8")
        load_env = MagicMock()
        copy_file = MagicMock()
        load_config(
            config_dir=config_env.parent,
            config_env_file=config_env,
            cwd=tmp_path / "elsewhere",
            load_env=load_env,
            copy_file=copy_file,
        )
        load_env.assert_called_once_with(config_env)
        copy_file.assert_not_called()

    def test_copies_example_when_nothing_exists(self, tmp_path):
        config_env = tmp_path / "cfg" / ".env"
        load_env = MagicMock()
        copy_file = MagicMock()
        load_config(
            config_dir=config_env.parent,
            config_env_file=config_env,
            cwd=tmp_path,
            load_env=load_env,
            copy_file=copy_file,
        )
        example = Path(cli.__file__).parent / ".env.example"
        copy_file.assert_called_once_with(example, config_env)
        load_env.assert_called_once_with(config_env)

    def test_copy_failure_is_not_fatal(self, tmp_path):
        config_env = tmp_path / "cfg" / ".env"
        load_env = MagicMock()
        load_config(
            config_dir=config_env.parent,
            config_env_file=config_env,
            cwd=tmp_path,
            load_env=load_env,
            copy_file=MagicMock(side_effect=OSError("read-only")),
        )
        load_env.assert_not_called()
