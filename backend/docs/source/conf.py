"""Sphinx configuration for the Geo Engine API reference."""

import pathlib
import sys

BACKEND_DIR = pathlib.Path(__file__).resolve().parents[2]
sys.path.insert(0, str(BACKEND_DIR))

project = "Geo Engine API"
author = "Geo Engine contributors"
copyright = f"2026, {author}"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "sphinx_autodoc_typehints",
]

exclude_patterns = ["_build", ".venv", ".pytest_cache"]

# Reference pages are generated from the geoengine package tree.
autosummary_generate = True
autodoc_member_order = "bysource"
autodoc_typehints = "description"
autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
}

# Native GIS bindings are mocked so the docs build without GDAL/PROJ.
autodoc_mock_imports = ["psycopg2", "pyproj", "rio_tiler"]

napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_attr_annotations = True

html_theme = "sphinx_rtd_theme"
html_title = f"{project} {release}"
