"""In-memory stand-ins for ChmArchive, used by the unit and server tests."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chmweb.archive import ENUMERATE_USER, UnitInfo, parse_sitemap  # noqa: E402


PAGES = {
    "/index.html": "<html><head><title>Welcome</title></head>"
                   "<body><p>Welcome to the manual. Install steps follow.</p></body></html>",
    "/guide/install.html": "<html><head><title>Installing</title></head>"
                           "<body>How to install the service on Windows.</body></html>",
    "/guide/usage.htm": "<html><head><title>Usage</title></head><body>Run the service with --port.</body></html>",
    "/chmweb/clash.html": "<html><head><title>Clash</title></head><body>A folder named like the UI prefix.</body></html>",
    "/images/logo.png": b"\x89PNG\r\n\x1a\nfakepng",
    "/#SYSTEM": b"system data",
    "/$FIftiMain": b"index data",
}

SITEMAP = """<HTML><BODY>
<OBJECT type="text/site properties"><param name="ImageType" value="Folder"></OBJECT>
<UL>
  <LI><OBJECT type="text/sitemap">
      <param name="Name" value="Welcome">
      <param name="Local" value="index.html">
      </OBJECT>
  <LI><OBJECT type="text/sitemap">
      <param name="Name" value="Guide">
      <param name="Local" value="guide/install.html">
      </OBJECT>
  <UL>
    <LI><OBJECT type="text/sitemap">
        <param name="Name" value="Installing">
        <param name="Local" value="guide/install.html">
        </OBJECT>
    <LI><OBJECT type="text/sitemap">
        <param name="Name" value="Usage">
        <param name="Local" value="guide/usage.htm#run">
        </OBJECT>
  </UL>
  <LI><OBJECT type="text/sitemap">
      <param name="Name" value="Clash">
      <param name="Local" value="chmweb/clash.html">
      </OBJECT>
</UL>
</BODY></HTML>
"""


class FakeIndexSearcher:
    """Prebuilt-index stand-in; records queries it was asked."""

    def __init__(self, results=None, searchable=False):
        self.searchable = searchable
        self.results = dict(results or {})
        self.calls = []

    def search(self, query, whole_words=False, titles_only=False, max_results=0):
        self.calls.append(query)
        items = list(self.results.items())
        if max_results:
            items = items[:max_results]
        return dict(items)


class FakeArchive:
    """Archive facade over a {path: content} dict.

    Parent directories of every path are added as zero-length entries, the way
    CHM directory listings contain them.
    """

    def __init__(self, files=None, title="Test Manual", encoding="utf-8",
                 home_file="/index.html", sitemap=SITEMAP, searcher=None):
        self.title = title
        self.encoding = encoding
        self.content_encoding = encoding
        self.home_file = home_file
        self.sitemap = sitemap
        self.searcher = searcher or FakeIndexSearcher()
        self.enumerate_calls = 0
        self.closed = False
        self._units = {"/": b""}
        for path, content in (PAGES if files is None else files).items():
            if isinstance(content, str):
                content = content.encode(encoding)
            self._units[path] = b"" if path.endswith("/") else content
            parts = path.split("/")[1:-1]
            for i in range(len(parts)):
                self._units.setdefault("/" + "/".join(parts[:i + 1]) + "/", b"")

    @staticmethod
    def _visible(path, scope):
        if scope != ENUMERATE_USER:
            return True
        return not (path.startswith("/#") or path.startswith("/$") or path.startswith("::"))

    def resolve(self, path):
        if path not in self._units:
            return None
        return UnitInfo(path, len(self._units[path]))

    def retrieve(self, unit, start=0, length=None):
        data = self._units[unit.path]
        end = len(data) if length is None else start + length
        return data[start:end]

    def enumerate(self, scope=ENUMERATE_USER):
        self.enumerate_calls += 1
        return [UnitInfo(p, len(self._units[p])) for p in sorted(self._units) if self._visible(p, scope)]

    def enumerate_dir(self, path, scope=ENUMERATE_USER):
        children = []
        for p in sorted(self._units):
            if p == path or not p.startswith(path) or not self._visible(p, scope):
                continue
            rest = p[len(path):].rstrip("/")
            if "/" in rest:
                continue
            children.append(UnitInfo(p, len(self._units[p])))
        return children

    def topics_tree(self):
        if self.sitemap is None:
            return None
        return parse_sitemap(self.sitemap)

    def index_searcher(self):
        return self.searcher

    def close(self):
        self.closed = True
