"""Thin facade over pychm for reading compiled help (CHM) archives.

Everything the server needs from an archive goes through ChmArchive: path
resolution, content retrieval, enumeration, metadata, the authored topics tree
and the archive's own full-text index. Paths are str, always absolute ("/...");
directories end with "/".

Requires: pychm (pip install pychm).
"""

import codecs
import collections
import logging
import posixpath
import re
import threading
from html.parser import HTMLParser

from chm import chm, chmlib

from chmweb.tree import TreeNode

log = logging.getLogger("chmweb")

# Enumeration scopes, same bit values as chmlib's CHM_ENUMERATE_* flags
ENUMERATE_NORMAL = 1
ENUMERATE_META = 2
ENUMERATE_SPECIAL = 4
ENUMERATE_FILES = 8
ENUMERATE_DIRS = 16
ENUMERATE_ALL = 31
ENUMERATE_USER = ENUMERATE_NORMAL | ENUMERATE_FILES | ENUMERATE_DIRS

UnitInfo = collections.namedtuple("UnitInfo", ["path", "length"])

_CJK_CODE_PAGES = frozenset(("cp932", "cp936", "cp949", "cp950"))


class ArchiveError(Exception):
    """The archive could not be opened or read."""


def is_directory(unit):
    return unit.length == 0 or unit.path.endswith("/")


def fix_encoding(codec):
    """Encoding used for generated pages and request parameters.

    Some archives declare a Western code page they don't actually use, so
    Latin-1 and Windows code pages are served as UTF-8. Other encodings (CJK and
    the like) are kept as declared.
    """
    codec = content_encoding(codec)
    name = codecs.lookup(codec).name
    if name in ("latin-1", "iso8859-1"):
        return "utf-8"
    if name.startswith("cp") and name not in _CJK_CODE_PAGES:
        return "utf-8"
    return codec


def content_encoding(codec):
    """Declared archive encoding if Python knows it, UTF-8 otherwise."""
    if not codec:
        return "utf-8"
    try:
        codecs.lookup(codec)
    except LookupError:
        return "utf-8"
    return codec


def _to_bytes(value, encoding="utf-8"):
    if isinstance(value, bytes):
        return value
    return value.encode(encoding, errors="replace")


def _to_str(value, encoding="utf-8"):
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(encoding, errors="replace")
    return value


# ── Topics (.hhc sitemap) ──

class _SitemapParser(HTMLParser):
    """Parse an HTML Help sitemap into a TreeNode tree.

    Sitemaps nest <UL> lists of <LI><OBJECT type="text/sitemap"> entries, each
    with <param name="Name"> and <param name="Local"> children. A nested <UL>
    holds the children of the entry right before it.
    """

    def __init__(self, base_dir="/"):
        super().__init__(convert_charrefs=True)
        self.base_dir = base_dir
        self.root = TreeNode("", "", node_id=0)
        self._next_id = 1
        self._parents = [self.root]
        self._last = None
        self._entry = None
        self._depth = 0

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        if tag == "ul":
            self._depth += 1
            # The outermost list belongs to the root
            if self._depth > 1 and self._last is not None:
                self._parents.append(self._last)
            else:
                self._parents.append(self._parents[-1])
        elif tag == "object" and (attrs.get("type") or "").lower() == "text/sitemap":
            self._entry = {"name": "", "local": ""}
        elif tag == "param" and self._entry is not None:
            name = (attrs.get("name") or "").lower()
            value = attrs.get("value") or ""
            if name == "name" and not self._entry["name"]:
                self._entry["name"] = value.strip()
            elif name == "local" and not self._entry["local"]:
                self._entry["local"] = value.strip()

    handle_startendtag = handle_starttag

    def handle_endtag(self, tag):
        if tag == "ul":
            if self._depth > 0:
                self._depth -= 1
                if len(self._parents) > 1:
                    self._parents.pop()
                self._last = None
        elif tag == "object" and self._entry is not None:
            parent = self._parents[-1]
            self._last = parent.add_child(self._topic_path(self._entry["local"]),
                                          self._entry["name"], node_id=self._next_id)
            self._next_id += 1
            self._entry = None

    def _topic_path(self, local):
        if not local:
            return ""
        if "::" in local:
            # ms-its:other.chm::/page.htm
            local = local.split("::", 1)[1]
        elif re.match(r"^[a-z][a-z0-9+.-]*:", local, re.IGNORECASE):
            return local  # external link (http:, mailto:, ...)
        anchor = ""
        if "#" in local:
            local, anchor = local.split("#", 1)
            anchor = "#" + anchor
        if not local.startswith("/"):
            local = posixpath.join(self.base_dir, local)
        return posixpath.normpath(local) + anchor


def parse_sitemap(text, base_dir="/"):
    parser = _SitemapParser(base_dir)
    parser.feed(text)
    parser.close()
    return parser.root


# ── Prebuilt index ──

class ChmIndexSearcher:
    """The archive's own full-text index ($FIftiMain), if it has one."""

    def __init__(self, archive):
        self._archive = archive
        with archive._lock:
            self.searchable = bool(archive._chm.IsSearchable())

    def search(self, query, whole_words=False, titles_only=False, max_results=0):
        """Return {path: title} in index order, at most max_results (0 = all)."""
        if not self.searchable:
            return {}
        archive = self._archive
        with archive._lock:
            _partial, hits = archive._chm.Search(_to_bytes(query, archive.content_encoding),
                                                 int(whole_words), int(titles_only))
        results = {}
        for title, url in (hits or {}).items():
            path = _to_str(url, archive.content_encoding)
            if not path.startswith("/"):
                path = "/" + path
            if path not in results:
                results[path] = _to_str(title, archive.content_encoding)
            if max_results and len(results) >= max_results:
                break
        return results


# ── Archive ──

class ChmArchive:
    """An open CHM file. Thread-safe: chmlib calls are serialized."""

    def __init__(self, chm_file, path):
        self._chm = chm_file
        self._lock = threading.RLock()  # chmlib handles are not thread-safe
        self._searcher = None
        self.path = path
        self.content_encoding = content_encoding(chm_file.GetEncoding())
        self.title = _to_str(chm_file.title, self.content_encoding)
        home = _to_str(chm_file.home, self.content_encoding) or "/"
        self.home_file = home if home.startswith("/") else "/" + home
        self.encoding = chm_file.GetEncoding() or self.content_encoding

    @classmethod
    def open(cls, path):
        chm_file = chm.CHMFile()
        if not chm_file.LoadCHM(path):
            raise ArchiveError(f"not a readable CHM file: {path}")
        log.debug("Opened %s", path)
        return cls(chm_file, path)

    def close(self):
        with self._lock:
            self._chm.CloseCHM()

    def resolve(self, path):
        """UnitInfo for ``path``, or None if the archive has no such entry."""
        with self._lock:
            result, ui = self._chm.ResolveObject(_to_bytes(path))
        if result != chmlib.CHM_RESOLVE_SUCCESS:
            return None
        return UnitInfo(_to_str(ui.path), ui.length)

    def retrieve(self, unit, start=0, length=None):
        """Bytes of an entry, optionally only a byte range."""
        if length is None:
            length = unit.length - start
        if length <= 0:
            return b""
        with self._lock:
            result, ui = self._chm.ResolveObject(_to_bytes(unit.path))
            if result != chmlib.CHM_RESOLVE_SUCCESS:
                return b""
            size, content = self._chm.RetrieveObject(ui, start, length)
        return bytes(content[:size]) if size else b""

    def enumerate(self, scope=ENUMERATE_USER):
        """All entries in archive order (sorted, parents before children)."""
        units = []

        def collect(_handle, ui, _context):
            units.append(UnitInfo(_to_str(ui.path), ui.length))
            return chmlib.CHM_ENUMERATOR_CONTINUE

        with self._lock:
            chmlib.chm_enumerate(self._chm.file, scope, collect, None)
        return units

    def enumerate_dir(self, path, scope=ENUMERATE_USER):
        """Direct children of the directory ``path``."""
        units = []

        def collect(_handle, ui, _context):
            units.append(UnitInfo(_to_str(ui.path), ui.length))
            return chmlib.CHM_ENUMERATOR_CONTINUE

        with self._lock:
            chmlib.chm_enumerate_dir(self._chm.file, _to_bytes(path), scope, collect, None)
        return units

    def topics_tree(self):
        """Authored topics tree, or None if the archive ships no sitemap."""
        topics = _to_str(self._chm.topics, self.content_encoding)
        if not topics:
            return None
        if not topics.startswith("/"):
            topics = "/" + topics
        unit = self.resolve(topics)
        if unit is None:
            return None
        text = self.retrieve(unit).decode(self.content_encoding, errors="replace")
        return parse_sitemap(text, posixpath.dirname(topics))

    def index_searcher(self):
        if self._searcher is None:
            self._searcher = ChmIndexSearcher(self)
        return self._searcher
