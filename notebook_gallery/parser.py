"""Jupyter notebook document parsing."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)


class NotebookFormatError(ValueError):
    """Document is not a readable Jupyter notebook."""

    pass


def parse_notebook(content: str | bytes) -> dict:
    """Parse a notebook document.

    Args:
        content: Raw .ipynb JSON text.

    Returns:
        The decoded notebook dict.

    Raises:
        NotebookFormatError: If the content is not JSON or not a notebook.
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise NotebookFormatError(f"Invalid notebook JSON: {e}") from e

    if not isinstance(data, dict):
        raise NotebookFormatError("Notebook document must be a JSON object")
    if "cells" not in data and "worksheets" not in data:
        raise NotebookFormatError("Notebook document has no cells")
    return data


def read_notebook(path: Path | str) -> dict:
    """Read and parse a notebook file."""
    with open(path, "rb") as f:
        return parse_notebook(f.read())


def _cells(notebook: dict) -> list[dict]:
    """All cells in document order (nbformat 4, or nbformat 3 worksheets)."""
    if "cells" in notebook:
        cells = notebook["cells"]
    else:
        worksheets = notebook.get("worksheets") or []
        if not isinstance(worksheets, list):
            raise NotebookFormatError("Notebook worksheets must be a list")
        cells = []
        for worksheet in worksheets:
            if not isinstance(worksheet, dict):
                raise NotebookFormatError("Notebook worksheet must be an object")
            worksheet_cells = worksheet.get("cells") or []
            if not isinstance(worksheet_cells, list):
                raise NotebookFormatError("Worksheet cells must be a list")
            cells.extend(worksheet_cells)
    if not isinstance(cells, list):
        raise NotebookFormatError("Notebook cells must be a list")
    return cells


def _source(cell: dict) -> str:
    # nbformat 3 code cells keep their source under "input"
    source = cell.get("source", cell.get("input", ""))
    if isinstance(source, list):
        if not all(isinstance(line, str) for line in source):
            raise NotebookFormatError("Cell source lines must be strings")
        return "".join(source)
    if not isinstance(source, str):
        raise NotebookFormatError("Cell source must be a string or list of strings")
    return source


def code_cells_source(notebook: dict) -> list[str]:
    """Source text of every code cell, in order."""
    sources = []
    for cell in _cells(notebook):
        if not isinstance(cell, dict):
            raise NotebookFormatError("Notebook cell must be an object")
        if cell.get("cell_type") == "code":
            sources.append(_source(cell))
    return sources


def notebook_text(notebook: dict) -> str:
    """Searchable text of the notebook: code and markdown sources."""
    parts = []
    for cell in _cells(notebook):
        if isinstance(cell, dict) and cell.get("cell_type") in ("code", "markdown"):
            try:
                parts.append(_source(cell))
            except NotebookFormatError:
                logger.debug("Skipping malformed cell in notebook text")
    return "\n".join(p for p in parts if p)


_PYTHON_IMPORT = re.compile(r"^\s*import\s+([^#\n;]+)", re.M)
_PYTHON_FROM = re.compile(r"^\s*from\s+(\w[\w.]*)\s+import\b", re.M)
_R_LIBRARY = re.compile(r"\b(?:library|require)\(\s*[\"']?([\w.]+)")


def packages(notebook: dict, lang: str) -> list[str]:
    """Top-level packages a notebook's code cells load, sorted and unique.

    Python imports and R library()/require() calls are recognized; other
    languages have no packages.

    Args:
        notebook: Parsed notebook document.
        lang: The notebook's language, e.g. "python" or "R".

    Raises:
        NotebookFormatError: If the code cells can't be read.
    """
    found: set[str] = set()
    lang = lang.lower()
    for source in code_cells_source(notebook):
        if lang == "python":
            for match in _PYTHON_IMPORT.finditer(source):
                for name in match.group(1).split(","):
                    # "import numpy.linalg as la" loads numpy
                    words = name.split()
                    if words and words[0].split(".")[0].isidentifier():
                        found.add(words[0].split(".")[0])
            found.update(m.group(1).split(".")[0] for m in _PYTHON_FROM.finditer(source))
        elif lang == "r":
            found.update(m.group(1) for m in _R_LIBRARY.finditer(source))
    return sorted(found)
