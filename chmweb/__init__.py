"""chmweb -- Browse compiled help (CHM) files in a web browser.

The server lives in chmweb.server; archive access in chmweb.archive; the
sidebar trees in chmweb.tree; search in chmweb.search and chmweb.index_engine.
"""

__version__ = "1.0.0"
