"""Unified search over one archive.

Three tiers, first usable one wins:
  1. the archive's own prebuilt full-text index
  2. the index chmweb builds itself (IndexEngine), once it is ready
  3. a linear scan over every HTML page in the archive

Regex queries always go to the linear scan. Every tier returns the same shape:
an insertion-ordered {path: title} dict, most relevant first.
"""

import html
import logging
import re

from chmweb.archive import ENUMERATE_USER, is_directory
from chmweb.tree import fix_chm_link, quote_json

log = logging.getLogger("chmweb")

MAX_SEARCH_RESULTS = 300

HTML_EXTENSIONS = (".htm", ".html", ".xhtml", ".shtml")

_title_re = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def strip_html(text):
    """Remove HTML tags and decode entities, return plain text."""
    text = re.sub(r"<script[^>]*>.*?</script>", "", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<style[^>]*>.*?</style>", "", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def extract_title(text, default=""):
    m = _title_re.search(text)
    if m:
        title = re.sub(r"\s+", " ", html.unescape(m.group(1))).strip()
        if title:
            return title
    return default


def is_html_path(path):
    return path.lower().endswith(HTML_EXTENSIONS)


def brute_force_search(archive, query, use_regex=False, max_results=MAX_SEARCH_RESULTS):
    """Scan page text for ``query``. Returns {path: title}, or None for a bad regex."""
    if use_regex:
        try:
            pattern = re.compile(query, re.IGNORECASE)
        except re.error as e:
            log.debug("bad regex %r: %s", query, e)
            return None
        matches = pattern.search
    else:
        needle = query.casefold()

        def matches(text):
            return needle in text.casefold()

    encoding = archive.content_encoding
    results = {}
    for unit in archive.enumerate(ENUMERATE_USER):
        if is_directory(unit) or not is_html_path(unit.path):
            continue
        raw = archive.retrieve(unit)
        if not raw:
            continue
        text = raw.decode(encoding, errors="replace")
        if not matches(strip_html(text)):
            continue
        results[unit.path] = extract_title(text, default=unit.path.rsplit("/", 1)[-1])
        if max_results and len(results) >= max_results:
            break
    return results


def unified_search(archive, get_engine, query, use_regex=False, max_results=MAX_SEARCH_RESULTS):
    """Search through the tiers. ``get_engine`` returns the session's IndexEngine.

    Returns {path: title} (possibly empty) or None when the query could not be
    run at all.
    """
    if not use_regex:
        searcher = archive.index_searcher()
        if searcher.searchable:
            log.debug("search tier: prebuilt index")
            return searcher.search(query, False, False, max_results)
        engine = get_engine()
        if engine.is_searchable():
            log.debug("search tier: built index")
            return engine.search(query, True, False, max_results)

    log.debug("search tier: content scan")
    return brute_force_search(archive, query, use_regex, max_results)


def write_search_results(results, out):
    """Append the {"ok": ..., "results": [[url, title], ...]} payload to ``out``."""
    if not results:
        out.append('{"ok": false}\n')
        return
    out.append('{"ok": true, "results":[\n')
    for i, (path, title) in enumerate(results.items()):
        if i > 0:
            out.append(",\n")
        out.append(f"[{quote_json(fix_chm_link(path))}, {quote_json(title)}]")
    out.append("]}\n")
