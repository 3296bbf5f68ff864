"""Tests for the notebook-gallery CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import yaml

from notebook_gallery.cli import _create_parser, _format_size, main
from notebook_gallery.config import GalleryConfig
from notebook_gallery.gallery import Gallery


@pytest.fixture
def config_file(tmp_path: Path, gallery_config: GalleryConfig) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(gallery_config.to_dict()), encoding="utf-8")
    return path


def seed(gallery_config: GalleryConfig, notebook_json) -> None:
    """Two public notebooks, one with content, straight through a Gallery."""

    async def _seed() -> None:
        async with Gallery(config=gallery_config) as gallery:
            owner = await gallery.store.add_user("ada", name="Ada")
            first = await gallery.store.add_notebook(
                "nb-1", "Linear regression", "", owner, public=True, lang_version="3.11"
            )
            await gallery.store.add_notebook(
                "nb-2", "Census cleanup", "", owner, public=True, lang_version="2.7"
            )
            gallery.content.write(first.uuid, notebook_json())

    asyncio.run(_seed())


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    """Tests for argument parsing."""

    def test_search_arguments(self) -> None:
        args = _create_parser().parse_args(
            ["search", "regression", "-u", "3", "--use-admin", "--page", "2", "--sort-dir", "asc"]
        )
        assert args.command == "search"
        assert args.query == "regression"
        assert args.user == 3
        assert args.use_admin is True
        assert args.page == 2
        assert args.sort_dir == "asc"

    def test_search_query_optional(self) -> None:
        args = _create_parser().parse_args(["search"])
        assert args.query is None
        assert args.user is None

    def test_invalid_sort_dir(self) -> None:
        with pytest.raises(SystemExit):
            _create_parser().parse_args(["search", "--sort-dir", "up"])

    def test_format_size(self) -> None:
        assert _format_size(512) == "512 B"
        assert _format_size(2048) == "2.0 KB"
        assert _format_size(3 * 1024 * 1024) == "3.0 MB"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestMain:
    """Tests for main() with a temp config."""

    def test_no_command_prints_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage:" in capsys.readouterr().out

    def test_bad_config(self, tmp_path: Path, capsys) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("server: [unclosed\n", encoding="utf-8")

        assert main(["stats", "--config", str(path)]) == 2
        assert "Error loading config" in capsys.readouterr().err

    def test_stats(self, config_file, gallery_config, notebook_json, capsys) -> None:
        seed(gallery_config, notebook_json)

        assert main(["stats", "--config", str(config_file)]) == 0

        out = capsys.readouterr().out
        assert "Notebooks: 2" in out
        assert "Indexed: 0" in out
        assert "python: 2" in out
        assert "python 2: 1" in out
        assert "python 3: 1" in out

    def test_reindex_then_search(
        self, config_file, gallery_config, notebook_json, capsys
    ) -> None:
        seed(gallery_config, notebook_json)

        assert main(["reindex", "--config", str(config_file)]) == 0
        assert "Indexed 2 notebooks" in capsys.readouterr().out

        assert main(["search", "regression", "--config", str(config_file)]) == 0
        out = capsys.readouterr().out
        assert "1 matches (page 1 of 1)" in out
        assert "1. Linear regression [nb-1]" in out

    def test_search_no_results(self, config_file, gallery_config, notebook_json, capsys) -> None:
        seed(gallery_config, notebook_json)

        assert main(["search", "zebrafish", "--config", str(config_file)]) == 0
        assert "No results found" in capsys.readouterr().out

    def test_search_unknown_user(self, config_file, capsys) -> None:
        assert main(["search", "-u", "42", "--config", str(config_file)]) == 1
        assert "Unknown user 42" in capsys.readouterr().err

    def test_search_invalid_sort(self, config_file, capsys) -> None:
        assert main(["search", "--sort", "owner", "--config", str(config_file)]) == 1
        assert "Error searching" in capsys.readouterr().err

    def test_rehash_reports_failures(
        self, config_file, gallery_config, notebook_json, capsys
    ) -> None:
        seed(gallery_config, notebook_json)

        assert main(["rehash", "--config", str(config_file)]) == 1
        assert "Rehashed: 1, Failed: 1" in capsys.readouterr().out

    def test_recompute(self, config_file, gallery_config, notebook_json, capsys) -> None:
        seed(gallery_config, notebook_json)

        assert main(["recompute", "--config", str(config_file)]) == 0
        assert "Failed: 0" in capsys.readouterr().out

    def test_packages(self, config_file, gallery_config, notebook_json, capsys) -> None:
        seed(gallery_config, notebook_json)

        assert main(["packages", "--config", str(config_file)]) == 0
        assert "python:\n  numpy: 1" in capsys.readouterr().out

    def test_packages_none(self, config_file, capsys) -> None:
        assert main(["packages", "--config", str(config_file)]) == 0
        assert "No packages found" in capsys.readouterr().out
