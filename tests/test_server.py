#!/usr/bin/env python3
"""Integration tests: start a real chmweb server and hit HTTP endpoints.

These tests verify the full request/response cycle including routing,
content types, tree and search payloads, directory listings and UI resources.
No CHM files needed: the session serves an in-memory archive.

Usage:
    python3 -m pytest tests/test_server.py -v
"""

import json
import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
import urllib.error
import urllib.request
from unittest.mock import MagicMock

# Make chmweb importable from repo root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import PAGES, FakeArchive  # noqa: E402


def _start_server(data_dir, archive=None):
    """Start a chmweb server on a free port, return (server, session, actual_port)."""
    from chmweb import server as chmweb

    session = chmweb.ChmWebServer(data_dir=data_dir)
    if archive is not None:
        session.use_archive(archive)
    server = chmweb.ChmHTTPServer(("127.0.0.1", 0), session)
    actual_port = server.server_address[1]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, session, actual_port


class _ServerTestCase(unittest.TestCase):
    archive_factory = FakeArchive

    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.mkdtemp()
        archive = cls.archive_factory() if cls.archive_factory else None
        cls._server, cls._session, cls._port = _start_server(cls._tmpdir, archive)
        cls._base = f"http://127.0.0.1:{cls._port}"

    @classmethod
    def tearDownClass(cls):
        cls._server.shutdown()
        cls._server.server_close()
        engine = cls._session._engine
        if engine is not None:
            engine.close()
        shutil.rmtree(cls._tmpdir, ignore_errors=True)

    def _fetch(self, path):
        """GET and return (body_bytes, status, headers), 4xx/5xx included."""
        url = f"{self._base}{path}"
        try:
            with urllib.request.urlopen(url, timeout=10) as resp:
                return resp.read(), resp.status, resp.headers
        except urllib.error.HTTPError as e:
            return e.read(), e.code, e.headers

    def _get_json(self, path):
        body, status, _headers = self._fetch(path)
        self.assertEqual(status, 200, body)
        return json.loads(body)


class TestServerEndpoints(_ServerTestCase):
    """Test HTTP endpoints against a running server."""

    # ── Main page ──

    def test_root_is_frameset(self):
        body, status, headers = self._fetch("/")
        self.assertEqual(status, 200)
        self.assertTrue(headers["Content-Type"].startswith("text/html"))
        text = body.decode("utf-8")
        self.assertIn("<frameset", text)
        self.assertIn('src="/chmweb/sidebar.html"', text)
        self.assertIn('src="/index.html"', text)
        self.assertIn("<title>Test Manual</title>", text)

    def test_index_html_alias(self):
        body, status, _ = self._fetch("/@index.html")
        self.assertEqual(status, 200)
        self.assertIn(b"<frameset", body)

    def test_one_request_per_connection(self):
        _, _, headers = self._fetch("/")
        self.assertEqual(headers["Connection"], "close")

    # ── Trees ──

    def test_topics_tree(self):
        data = self._get_json("/@topics.json")
        self.assertEqual([n[1] for n in data], ["Welcome", "Guide", "Clash"])
        self.assertEqual(data[1][2], [["/guide/install.html", "Installing"],
                                      ["/guide/usage.htm#run", "Usage"]])
        self.assertEqual(data[2][0], "/nonchmweb/clash.html")

    def test_topics_subtree(self):
        data = self._get_json("/@topics.json?id=2")
        self.assertEqual([n[1] for n in data], ["Installing", "Usage"])

    def test_topics_bad_id_returns_whole_tree(self):
        self.assertEqual(self._get_json("/@topics.json?id=abc"), self._get_json("/@topics.json"))

    def test_topics_unknown_id_empty(self):
        body, status, _ = self._fetch("/@topics.json?id=999")
        self.assertEqual(status, 200)
        self.assertEqual(body, b"")

    def test_files_tree(self):
        data = self._get_json("/@files.json")
        self.assertEqual(data[0], ["/index.html", "Main Page"])
        self.assertEqual(data[1], ["/nonchmweb/", "Root Directory"])
        self.assertEqual(data[2], ["/nonchmweb/", "chmweb/", [["/nonchmweb/clash.html", "clash.html"]]])
        self.assertEqual([n[1] for n in data[3:]], ["guide/", "images/", "index.html"])

    def test_files_subtree(self):
        data = self._get_json("/@files.json?id=3")
        self.assertEqual(data, [["/guide/install.html", "install.html"], ["/guide/usage.htm", "usage.htm"]])

    def test_content_type_json(self):
        _, _, headers = self._fetch("/@files.json")
        self.assertTrue(headers["Content-Type"].startswith("application/json"))

    # ── Search ──

    def test_search(self):
        data = self._get_json("/@search.json?q=install")
        self.assertTrue(data["ok"])
        self.assertEqual([r[0] for r in data["results"]], ["/guide/install.html", "/index.html"])
        self.assertEqual(data["results"][0][1], "Installing")

    def test_search_no_results(self):
        self.assertEqual(self._get_json("/@search.json?q=zzzzqqq"), {"ok": False})

    def test_search_regex(self):
        data = self._get_json("/@search.json?q=serv.ce%20(on|with)&regex=1")
        self.assertEqual([r[0] for r in data["results"]], ["/guide/install.html", "/guide/usage.htm"])

    def test_search_regex_flag_off(self):
        self.assertEqual(self._get_json("/@search.json?q=serv.ce&regex=0"), {"ok": False})

    def test_search_bad_regex(self):
        self.assertEqual(self._get_json("/@search.json?q=(&regex=true"), {"ok": False})

    def test_search_rewrites_urls(self):
        data = self._get_json("/@search.json?q=prefix")
        self.assertEqual(data["results"], [["/nonchmweb/clash.html", "Clash"]])

    def test_search_missing_query(self):
        body, status, _ = self._fetch("/@search.json")
        self.assertEqual(status, 200)
        self.assertEqual(body, b"")

    def test_search3_before_index_built(self):
        body, status, _ = self._fetch("/@search3.json?q=install")
        self.assertEqual(status, 200)
        self.assertEqual(body, b"")

    # ── Info ──

    def test_info(self):
        data = self._get_json("/@info.json")
        self.assertEqual(data["title"], "Test Manual")
        self.assertEqual(data["encoding"], "utf-8")
        self.assertEqual(data["homeFile"], "/index.html")
        self.assertFalse(data["hasIndex"])
        self.assertEqual(data["buildIndexStep"], -1)
        self.assertTrue(data["ok"])

    # ── UI resources ──

    def test_sidebar_page(self):
        body, status, headers = self._fetch("/chmweb/sidebar.html")
        self.assertEqual(status, 200)
        self.assertTrue(headers["Content-Type"].startswith("text/html"))
        self.assertIn(b"sidebar.js", body)

    def test_sidebar_script(self):
        _, status, headers = self._fetch("/chmweb/js/sidebar.js")
        self.assertEqual(status, 200)
        self.assertEqual(headers["Content-Type"], "application/javascript")

    def test_resource_via_at_prefix(self):
        _, status, _ = self._fetch("/@css/chmweb.css")
        self.assertEqual(status, 200)

    def test_resource_missing(self):
        body, status, headers = self._fetch("/chmweb/nope.css")
        self.assertEqual(status, 404)
        self.assertEqual(headers["Content-Type"], "text/plain")
        self.assertEqual(body, b"404: not found: nope.css")

    def test_resource_path_traversal_blocked(self):
        _, status, _ = self._fetch("/chmweb/%2e%2e/server.py")
        self.assertEqual(status, 404)

    def test_favicon(self):
        _, status, _ = self._fetch("/favicon.ico")
        self.assertEqual(status, 404)

    # ── Archive content ──

    def test_directory_listing(self):
        body, status, headers = self._fetch("/guide/")
        self.assertEqual(status, 200)
        self.assertTrue(headers["Content-Type"].startswith("text/html"))
        text = body.decode("utf-8")
        self.assertIn("<h1>/guide/</h1>", text)
        self.assertIn('<a href="/nonchmweb/">..</a>', text)
        self.assertIn('<td class="file"><a href="/guide/install.html">install.html</a></td>', text)
        self.assertIn(f'<td class="filesize">{len(PAGES["/guide/install.html"])}</td>', text)

    def test_root_listing_via_escape_prefix(self):
        body, status, _ = self._fetch("/nonchmweb/")
        self.assertEqual(status, 200)
        text = body.decode("utf-8")
        self.assertNotIn(">..</a>", text)
        self.assertIn('<td class="folder"><a href="/nonchmweb/">chmweb/</a></td>', text)
        self.assertIn('<td class="folder"><a href="/guide/">guide/</a></td>', text)
        self.assertIn('<a href="/index.html">index.html</a>', text)
        self.assertNotIn("#SYSTEM", text)

    def test_escaped_ui_prefix_file_is_not_mapped_back(self):
        # /nonchmweb/ maps back to "/" for directory listings only
        body, status, _ = self._fetch("/nonchmweb/clash.html")
        self.assertEqual(status, 404)
        self.assertIn(b"404: not found: /nonchmweb/clash.html", body)

    def test_html_file(self):
        body, status, headers = self._fetch("/guide/install.html")
        self.assertEqual(status, 200)
        self.assertEqual(headers["Content-Type"], "text/html")
        self.assertEqual(body, PAGES["/guide/install.html"].encode("utf-8"))

    def test_binary_file(self):
        body, status, headers = self._fetch("/images/logo.png")
        self.assertEqual(status, 200)
        self.assertEqual(headers["Content-Type"], "image/png")
        self.assertEqual(body, PAGES["/images/logo.png"])

    def test_missing_html_file(self):
        body, status, _ = self._fetch("/missing.html")
        self.assertEqual(status, 404)
        self.assertIn(b"404: not found: /missing.html", body)

    def test_missing_other_file(self):
        body, status, _ = self._fetch("/missing.png")
        self.assertEqual(status, 404)
        self.assertEqual(body, b"")

    def test_quoted_path(self):
        _, status, _ = self._fetch("/guide/%69nstall.html")
        self.assertEqual(status, 200)

    # ── Concurrency ──

    def test_concurrent_requests(self):
        results = []
        errors = []

        def fetch(path):
            try:
                body, status, _ = self._fetch(path)
                results.append((path, status, body))
            except Exception as e:
                errors.append(e)

        paths = ["/@files.json", "/@topics.json", "/@search.json?q=service", "/guide/usage.htm"] * 4
        threads = [threading.Thread(target=fetch, args=(p,)) for p in paths]
        for t in threads:
            t.start()
        for t in threads:
            t.join(15)
        self.assertEqual(errors, [])
        self.assertEqual(len(results), len(paths))
        self.assertTrue(all(status == 200 for _, status, _ in results))
        for path in set(paths):
            bodies = {body for p, _, body in results if p == path}
            self.assertEqual(len(bodies), 1, path)


class TestIndexBuild(_ServerTestCase):
    """Building the index through /@index.json, then searching it."""

    def _wait_for_index(self, timeout=10):
        deadline = time.time() + timeout
        step = self._get_json("/@index.json")["step"]
        while step < 3 and time.time() < deadline:
            time.sleep(0.05)
            step = self._get_json("/@index.json")["step"]
        return step

    def test_build_then_search(self):
        first = self._get_json("/@index.json")["step"]
        self.assertGreaterEqual(first, 0)
        self.assertEqual(self._wait_for_index(), 3)

        data = self._get_json("/@search3.json?q=install")
        self.assertTrue(data["ok"])
        self.assertEqual({r[0] for r in data["results"]}, {"/guide/install.html", "/index.html"})
        self.assertEqual(self._get_json("/@search3.json?q=zzzzqqq"), {"ok": False})

        # the unified search now uses the built index
        data = self._get_json("/@search.json?q=windows")
        self.assertEqual(data["results"], [["/guide/install.html", "Installing"]])

        self.assertEqual(self._get_json("/@info.json")["buildIndexStep"], 3)


def _cjk_archive():
    page = "<html><head><title>T</title></head><body>安装 指南</body></html>"
    return FakeArchive(files={"/a.html": page}, encoding="cp936", home_file="/a.html", sitemap=None)


def _unreadable_archive():
    archive = FakeArchive()
    archive.retrieve = MagicMock(side_effect=OSError("bad block"))
    return archive


class TestCjkArchive(_ServerTestCase):
    """Archive in a CJK code page: sidebar queries arrive UTF-8 encoded."""

    archive_factory = staticmethod(_cjk_archive)

    def test_search_with_utf8_query(self):
        data = self._get_json("/chmweb/search.json?q=%E5%AE%89%E8%A3%85")
        self.assertEqual(data, {"ok": True, "results": [["/a.html", "T"]]})

    def test_info_keeps_declared_encoding(self):
        data = self._get_json("/chmweb/info.json")
        self.assertEqual(data["encoding"], "cp936")
        _, _, headers = self._fetch("/chmweb/info.json")
        self.assertIn("charset=utf-8", headers["Content-Type"])

    def test_generated_pages_use_archive_encoding(self):
        _, _, headers = self._fetch("/")
        self.assertIn("charset=cp936", headers["Content-Type"])

    def test_sidebar_calls_utf8_endpoints(self):
        body, _, _ = self._fetch("/chmweb/js/sidebar.js")
        self.assertIn(b'var API = "/chmweb/";', body)
        self.assertNotIn(b'"/@', body)


class TestFailedIndexBuild(_ServerTestCase):
    """A failed build stays failed while clients poll, until retry=1."""

    archive_factory = staticmethod(_unreadable_archive)

    def _poll_until_failed(self, path, timeout=10):
        deadline = time.time() + timeout
        step = self._get_json(path)["step"]
        while step != -2 and time.time() < deadline:
            time.sleep(0.05)
            step = self._get_json("/chmweb/index.json")["step"]
        return step

    def test_polling_does_not_restart_build(self):
        archive = self._session.archive
        self.assertEqual(self._poll_until_failed("/chmweb/index.json"), -2)
        for _ in range(5):
            self.assertEqual(self._get_json("/chmweb/index.json"), {"step": -2})
        self.assertEqual(archive.enumerate_calls, 1)
        self.assertEqual(self._get_json("/chmweb/info.json")["buildIndexStep"], -2)

        # explicit retry runs one more build
        self.assertEqual(self._poll_until_failed("/chmweb/index.json?retry=1"), -2)
        self.assertEqual(archive.enumerate_calls, 2)


class TestNoArchive(_ServerTestCase):
    archive_factory = None

    def test_unavailable(self):
        _, status, _ = self._fetch("/")
        self.assertEqual(status, 503)
        _, status, _ = self._fetch("/@files.json")
        self.assertEqual(status, 503)


if __name__ == "__main__":
    unittest.main(verbosity=2)
