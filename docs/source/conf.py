# Configuration file for the Sphinx documentation builder.
#
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys

# Document the source tree without installing it.
sys.path.insert(0, os.path.abspath(os.path.join('..', '..', 'src')))

project = 'libvna'
copyright = '2020-2023, D Scott Guthridge'
author = 'D Scott Guthridge'
release = '0.1.0'

# -- General configuration ---------------------------------------------------

autodoc_member_order = 'bysource'
autodoc_typehints = 'none'
napoleon_google_docstring = True
napoleon_numpy_docstring = False

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.mathjax',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx_rtd_theme',
]

exclude_patterns = []

# -- Options for HTML output -------------------------------------------------

html_theme = 'sphinx_rtd_theme'
