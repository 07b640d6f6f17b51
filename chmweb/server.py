#!/usr/bin/env python3
"""
chmweb -- Browse compiled help (CHM) files in a web browser

Serves the pages of one CHM archive over HTTP, together with a sidebar that
shows the archive's table of contents, a synthesized file tree and a search
box. Search uses the archive's own full-text index when it has one, an index
chmweb builds on request otherwise, and falls back to scanning every page.

Requires: pychm (pip install pychm)

Configuration:
  CHMWEB_DATA_DIR   Where built search indexes are kept (default: ~/.chmweb)
  CHMWEB_RESOURCES  Directory with UI resources overriding the bundled ones
  CHMWEB_HOST       Address to bind (default: 127.0.0.1)

Usage (CLI):
  chmweb serve manual.chm [--port 8080] [--open]
  chmweb info manual.chm
  chmweb search manual.chm "install" [--regex] [--limit 20]
  chmweb read manual.chm /html/intro.htm
  chmweb index manual.chm

HTTP endpoints:
  GET /  or /@index.html          Frameset page (sidebar + home page)
  GET /@topics.json[?id=N]        Table of contents as nested JSON arrays
  GET /@files.json[?id=N]         File tree as nested JSON arrays
  GET /@search.json?q=...&regex=1 Unified search (max 300 results)
  GET /@search3.json?q=...        Search the built index only, no limit
  GET /@index.json[?retry=1]      Start building the index, report progress
                                  (step -2: failed; retry=1 starts over)
  GET /@info.json                 Archive title, encoding, home page, index state
  GET /chmweb/<file>              UI resources (sidebar page, css, js)
  GET /chmweb/<name>.json         Same JSON endpoints, parameters always UTF-8
                                  (the sidebar uses these)
  GET /<dir>/                     Directory listing of archive content
  GET /<file>                     Raw archive content
"""

import argparse
import gzip
import html
import json
import logging
import os
import sys
import threading
import time
import traceback
import webbrowser
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse, parse_qs, unquote

from chmweb import __version__
from chmweb.archive import ArchiveError, ChmArchive, ENUMERATE_USER, fix_encoding
from chmweb.index_engine import BUILD_FAILED, IndexEngine
from chmweb.search import MAX_SEARCH_RESULTS, strip_html, extract_title, unified_search, write_search_results
from chmweb.tree import (
    ESCAPE_PREFIX, FULL_TREE_MAX_LEVEL, UI_PREFIX, TreeNode,
    build_files_tree, choose_max_level, count_nodes, fix_chm_link, quote_json,
    select_subtree, serialize_tree,
)

log = logging.getLogger("chmweb")
logging.basicConfig(format="%(asctime)s %(message)s", datefmt="%H:%M:%S", level=logging.INFO)

CHMWEB_DATA_DIR = os.environ.get("CHMWEB_DATA_DIR", os.path.join(os.path.expanduser("~"), ".chmweb"))
CHMWEB_RESOURCES = os.environ.get("CHMWEB_RESOURCES", "")
CHMWEB_HOST = os.environ.get("CHMWEB_HOST", "127.0.0.1")

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")

PORT_RANGE = (50000, 63000)  # probed in order when no port is given
MAX_CONTENT_LENGTH = 8000    # chars returned by read_page by default

MIME_TYPES = {
    ".html": "text/html", ".htm": "text/html", ".xhtml": "text/html", ".shtml": "text/html",
    ".hhc": "text/html", ".hhk": "text/html",
    ".css": "text/css", ".js": "application/javascript", ".json": "application/json",
    ".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg",
    ".gif": "image/gif", ".bmp": "image/bmp", ".svg": "image/svg+xml",
    ".ico": "image/x-icon", ".pdf": "application/pdf",
    ".woff": "font/woff", ".woff2": "font/woff2", ".ttf": "font/ttf",
    ".xml": "application/xml", ".txt": "text/plain",
    ".swf": "application/x-shockwave-flash",
    ".mp3": "audio/mpeg", ".wav": "audio/wav", ".avi": "video/x-msvideo",
}

# MIME types that benefit from gzip (text-based, not already compressed)
COMPRESSIBLE_TYPES = {"text/", "application/javascript", "application/json", "application/xml", "image/svg+xml"}


def content_type_for(path):
    ext = os.path.splitext(path)[1].lower()
    return MIME_TYPES.get(ext, "application/octet-stream")


def format_json_object(data):
    """One key per line, strings escaped with quote_json."""
    lines = ["{"]
    last = len(data) - 1
    for i, (key, value) in enumerate(data.items()):
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, int):
            value = str(value)
        else:
            value = quote_json(str(value))
        lines.append(f"{quote_json(key)}: {value}{',' if i < last else ''}")
    lines.append("}")
    return "\n".join(lines) + "\n"


MAIN_PAGE_HTML = """<!DOCTYPE HTML PUBLIC "-//W3C//DTD HTML 4.01 Frameset//EN"
    "http://www.w3.org/TR/html4/frameset.dtd">
<html>
<head>
  <title>%(title)s</title>
  <meta http-equiv="Content-Type" content="text/html; charset=%(encoding)s">
</head>
<frameset cols="200, *">
  <frame src="/chmweb/sidebar.html" name="treefrm">
  <frame src="%(home)s" name="basefrm">
  <noframes>
    <noscript>
      <div>JavaScript is disabled on your browser.</div>
    </noscript>
    <h2>Frame Alert</h2>
    <p>This document is designed to be viewed using the frames feature.
      If you see this message, you are using a non-frame-capable web client.
      Link to <a href="%(home)s">Main Page</a>.</p>
  </noframes>
</frameset>
</html>
"""

DIR_PAGE_HEAD = """<html>
<head>
<meta http-equiv="Content-Type" content="text/html; charset=%(encoding)s">
<title>%(dir)s</title><link rel="stylesheet" href="/chmweb/css/chmweb.css"></head><body>
<h1>%(dir)s</h1><table class="filelist">
<thead>
<tr>
  <td>File</td>
  <td class="filesize">Size</td>
</tr>
</thead>
<tbody>
"""

DIR_PAGE_TAIL = """</tbody>
</table>
</body>
</html>
"""

NOT_FOUND_HTML = """<html>
<head>
<meta http-equiv="Content-Type" content="text/html; charset=%(encoding)s">
<title>404</title></head><body>
404: not found: %(path)s</body>
</html>
"""


# ── Session ──

class PortUnavailable(OSError):
    """Requested port is busy, or no free port was found in PORT_RANGE."""


class ChmWebServer:
    """Serves one CHM archive.

    Holds the open archive plus everything derived from it that is expensive to
    build and shared by all connections: the files tree, the topics tree and
    the index engine. Each is built on first use by whichever request needs it
    first; concurrent requests wait for and reuse that result.
    """

    def __init__(self, resources_path=None, data_dir=None, host=None):
        self.resources_path = CHMWEB_RESOURCES if resources_path is None else resources_path
        self.data_dir = data_dir or CHMWEB_DATA_DIR
        self.host = host or CHMWEB_HOST
        self.archive = None
        self.encoding = "utf-8"
        self.chm_file_path = ""
        self._httpd = None
        self._thread = None
        self._files = None    # (tree, max_level)
        self._topics = None   # (tree, max_level)
        self._engine = None
        self._files_lock = threading.Lock()
        self._topics_lock = threading.Lock()
        self._engine_lock = threading.Lock()

    # ── Archive ──

    def open_chm_file(self, chm_path):
        """Open an archive for serving. False (and logged) if it can't be read."""
        try:
            archive = ChmArchive.open(chm_path)
        except (ArchiveError, OSError) as e:
            log.error("Failed to open this CHM file: %s", e)
            return False
        self.use_archive(archive, chm_path)
        return True

    def use_archive(self, archive, chm_path=""):
        """Serve ``archive``, dropping everything derived from a previous one."""
        with self._engine_lock:
            if self._engine is not None:
                self._engine.close()
            self._engine = None
        self._files = None
        self._topics = None
        self.archive = archive
        self.chm_file_path = chm_path or ""
        self.encoding = fix_encoding(archive.encoding)

    @property
    def chm_title(self):
        return self.archive.title if self.archive is not None else ""

    def get_files_tree(self):
        if self._files is None:
            with self._files_lock:
                if self._files is None:
                    units = self.archive.enumerate(ENUMERATE_USER)
                    tree = build_files_tree(units, self.archive.home_file)
                    self._files = (tree, choose_max_level(len(units)))
                    log.debug("Files tree: %d entries", len(units))
        return self._files

    def get_topics_tree(self):
        """(tree, max_level); tree is None when the archive has no table of contents."""
        if self._topics is None:
            with self._topics_lock:
                if self._topics is None:
                    tree = self.archive.topics_tree()
                    self._topics = (tree, choose_max_level(count_nodes(tree)))
        return self._topics

    def get_index_engine(self):
        if self._engine is None:
            with self._engine_lock:
                if self._engine is None:
                    engine = IndexEngine(self.archive, self.chm_file_path,
                                         os.path.join(self.data_dir, "indexes"))
                    self._add_stop_words(engine)
                    engine.read_index()
                    self._engine = engine
        return self._engine

    def _add_stop_words(self, engine):
        data = self.get_resource("stopwords.txt")
        if data is None:
            return
        for line in data.decode("utf-8", errors="replace").splitlines():
            engine.add_stop_words(line)

    def has_prebuilt_index(self):
        return self.archive.index_searcher().searchable

    def search(self, query, use_regex=False, max_results=MAX_SEARCH_RESULTS):
        """Unified search; None when the query could not be run."""
        try:
            return unified_search(self.archive, self.get_index_engine, query, use_regex, max_results)
        except Exception as e:
            log.warning("Failed to handle search %r: %s", query, e)
            return None

    def info(self):
        if self.archive is None:
            return {"ok": False}
        has_index = self.has_prebuilt_index()
        info = {
            "title": self.archive.title,
            "encoding": self.archive.encoding,
            "homeFile": fix_chm_link(self.archive.home_file),
            "hasIndex": has_index,
        }
        if not has_index:
            info["buildIndexStep"] = self.get_index_engine().get_build_step()
        info["ok"] = True
        return info

    def read_page(self, path, max_length=MAX_CONTENT_LENGTH):
        """Read an archive page as plain text."""
        unit = self.archive.resolve(path)
        if unit is None:
            return {"error": f"Page '{path}' not found"}
        text = self.archive.retrieve(unit).decode(self.archive.content_encoding, errors="replace")
        mimetype = content_type_for(path)
        plain = strip_html(text) if mimetype == "text/html" else text
        return {
            "path": path,
            "title": extract_title(text, default=path.rsplit("/", 1)[-1]),
            "content": plain[:max_length],
            "truncated": len(plain) > max_length,
            "full_length": len(plain),
            "mimetype": mimetype,
        }

    # ── Resources ──

    def _resource_dirs(self):
        return [d for d in (self.resources_path, STATIC_DIR) if d and os.path.isdir(d)]

    def get_resource(self, name):
        """Bytes of a UI resource, or None."""
        # Path traversal protection
        if not name or ".." in name.split("/"):
            return None
        rel_path = name.lstrip("/")
        for base in self._resource_dirs():
            base = os.path.normpath(base)
            file_path = os.path.normpath(os.path.join(base, rel_path))
            if not file_path.startswith(base + os.sep):
                continue
            if os.path.isfile(file_path):
                try:
                    with open(file_path, "rb") as f:
                        return f.read()
                except OSError as e:
                    log.info("Failed to get resource %s: %s", name, e)
                    return None
        return None

    # ── Server lifecycle ──

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    @property
    def server_port(self):
        if self._httpd is None:
            return 0
        return self._httpd.server_address[1]

    def serve_chm_file(self, chm_path, port=0):
        """Open ``chm_path`` and start serving it in the background."""
        if self.is_running:
            return False
        if not self.open_chm_file(chm_path):
            return False
        return self.start(port)

    def start(self, port=0):
        try:
            self._httpd = create_http_server(self, port, self.host)
        except PortUnavailable as e:
            log.error("Failed to find a free port: %s", e)
            return False
        self._thread = threading.Thread(target=self._httpd.serve_forever, name="chmweb-accept", daemon=True)
        self._thread.start()
        log.info("Serving %s on port %d", self.chm_file_path or self.chm_title, self.server_port)
        return True

    def wait(self):
        """Block until the server stops (or Ctrl-C)."""
        while self.is_running:
            self._thread.join(0.5)

    def stop_server(self):
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        self._httpd = None
        if self._thread is not None:
            self._thread.join(5)
            self._thread = None
        with self._engine_lock:
            if self._engine is not None:
                self._engine.close()
                self._engine = None
        log.info("Server stopped")


class ChmHTTPServer(ThreadingHTTPServer):
    """One thread per connection; the session is shared by all of them."""

    daemon_threads = True

    def __init__(self, server_address, session):
        self.session = session
        super().__init__(server_address, ChmHandler)

    def handle_error(self, request, client_address):
        # Broken connections only affect their own thread
        log.debug("Connection error from %s", client_address[0], exc_info=True)


def create_http_server(session, port=0, host=CHMWEB_HOST):
    """Bind ``port``, or the first free port in PORT_RANGE when port is 0."""
    if port > 0:
        try:
            return ChmHTTPServer((host, port), session)
        except OSError as e:
            raise PortUnavailable(f"port {port}: {e}") from e
    for candidate in range(*PORT_RANGE):
        try:
            return ChmHTTPServer((host, candidate), session)
        except OSError:
            continue  # try next port
    raise PortUnavailable(f"no free port in {PORT_RANGE[0]}-{PORT_RANGE[1] - 1}")


# ── HTTP handler ──

class ChmHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.0"  # one request per connection
    server_version = f"chmweb/{__version__}"

    def do_GET(self):
        session = self.server.session
        self.archive = session.archive
        self._sent = False
        parsed = urlparse(self.path)
        requested = unquote(parsed.path, errors="replace")

        # UI resources are always UTF-8, whatever the archive uses
        self.encoding = "utf-8" if requested.startswith(UI_PREFIX) else session.encoding
        self.params = parse_qs(parsed.query, encoding=self.encoding, errors="replace")

        if self.archive is None:
            return self._send(503, b"no archive loaded", "text/plain")

        try:
            if requested == "/":
                self._deliver_special("")
            elif requested.lower() == "/favicon.ico":
                self._deliver_special(requested[1:])
            elif requested.startswith("/@"):
                self._deliver_special(requested[2:])
            elif requested.startswith(UI_PREFIX):
                self._deliver_special(requested[len(UI_PREFIX):])
            elif requested.endswith("/"):
                if requested == ESCAPE_PREFIX:
                    requested = "/"
                self._deliver_dir(requested)
            else:
                self._deliver_file(requested)
        except (BrokenPipeError, ConnectionResetError) as e:
            log.debug("Failed to handle request %s: %s", self.path, e)
        except Exception as e:
            traceback.print_exc()
            if not self._sent:
                self._send(500, f"500: {e}".encode("utf-8", errors="replace"), "text/plain")

    def _param(self, key, default=None):
        return self.params.get(key, [default])[0]

    # ── Special endpoints ──

    def _deliver_special(self, name):
        lname = name.lower()
        if lname in ("", "index.html"):
            self._deliver_main()
        elif lname == "topics.json":
            tree, max_level = self.server.session.get_topics_tree()
            self._deliver_tree(tree, max_level)
        elif lname == "files.json":
            tree, max_level = self.server.session.get_files_tree()
            self._deliver_tree(tree, max_level)
        elif lname == "search.json":
            self._deliver_unified_search()
        elif lname == "index.json":
            self._deliver_build_index()
        elif lname == "search3.json":
            self._deliver_search3()
        elif lname == "info.json":
            self._text(200, format_json_object(self.server.session.info()), "application/json")
        else:
            self._deliver_resource(name)

    def _deliver_main(self):
        home = html.escape(fix_chm_link(self.archive.home_file))
        page = MAIN_PAGE_HTML % {
            "title": html.escape(self.archive.title),
            "encoding": self.encoding,
            "home": home,
        }
        self._text(200, page, "text/html")

    def _deliver_tree(self, tree, max_level=FULL_TREE_MAX_LEVEL):
        if tree is None:
            tree = TreeNode()  # no table of contents: serializes as []
        subtree = select_subtree(tree, self._param("id"))
        if subtree is None:
            return self._text(200, "", "application/json")
        self._text(200, serialize_tree(subtree, max_level), "application/json")

    def _deliver_unified_search(self):
        query = self._param("q")
        if not query:
            log.debug("empty query")
            return self._text(200, "", "application/json")
        regex = (self._param("regex") or "").lower()
        use_regex = regex in ("1", "true")
        log.debug("query: %s, regex: %s", query, use_regex)

        t0 = time.time()
        results = self.server.session.search(query, use_regex, MAX_SEARCH_RESULTS)
        log.debug("search q=%r %d results %.2fs", query, len(results or ()), time.time() - t0)
        self._deliver_search_results(results)

    def _deliver_search3(self):
        query = self._param("q")
        if not query:
            log.debug("empty query")
            return self._text(200, "", "application/json")
        log.debug("query: %s", query)

        engine = self.server.session.get_index_engine()
        if not engine.is_searchable():
            return self._text(200, "", "application/json")
        self._deliver_search_results(engine.search(query, True, False, 0))

    def _deliver_search_results(self, results):
        out = []
        write_search_results(results, out)
        self._text(200, "".join(out), "application/json")

    def _deliver_build_index(self):
        engine = self.server.session.get_index_engine()
        if (self._param("retry") or "").lower() in ("1", "true"):
            engine.reset_failed_build()
        step = engine.start_build()
        self._text(200, format_json_object({"step": step}), "application/json")

    def _deliver_resource(self, name):
        body = self.server.session.get_resource(name)
        if body is None:
            return self._send(404, f"404: not found: {name}".encode("utf-8"), "text/plain")
        self._send(200, body, content_type_for(name))

    # ── Archive content ──

    def _deliver_dir(self, requested):
        out = [DIR_PAGE_HEAD % {"encoding": self.encoding, "dir": html.escape(requested)}]

        # /apple/banana/ -> /apple/, / has no parent
        index = requested[:-1].rfind("/")
        if index >= 0:
            parent = fix_chm_link(requested[:index + 1])
            out.append(f'<tr>\n<td><a href="{html.escape(parent)}">..</a></td>\n<td></td>\n</tr>\n')

        for unit in self.archive.enumerate_dir(requested, ENUMERATE_USER):
            if unit.path == requested:
                continue
            href = html.escape(fix_chm_link(unit.path))
            name = html.escape(unit.path[len(requested):])
            out.append("<tr>\n")
            if unit.length > 0:
                out.append(f'<td class="file"><a href="{href}">{name}</a></td>\n')
                out.append(f'<td class="filesize">{unit.length}</td>\n')
            else:
                out.append(f'<td class="folder"><a href="{href}">{name}</a></td>\n')
                out.append("<td></td>\n")
            out.append("</tr>\n")

        out.append(DIR_PAGE_TAIL)
        self._text(200, "".join(out), "text/html")

    def _deliver_file(self, requested):
        unit = self.archive.resolve(requested)
        mimetype = content_type_for(requested)
        if unit is None:
            if mimetype == "text/html":
                page = NOT_FOUND_HTML % {"encoding": self.encoding, "path": html.escape(requested)}
                return self._text(404, page, "text/html")
            return self._send(404, b"", mimetype)
        self._send(200, self.archive.retrieve(unit), mimetype)

    # ── Output ──

    def _accepts_gzip(self):
        return "gzip" in self.headers.get("Accept-Encoding", "")

    def _send(self, code, body_bytes, content_type):
        self._sent = True
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        ct_base = content_type.split(";")[0]
        compressible = any(ct_base.startswith(t) or ct_base == t for t in COMPRESSIBLE_TYPES)
        if compressible and self._accepts_gzip() and len(body_bytes) > 256:
            body_bytes = gzip.compress(body_bytes, compresslevel=4)
            self.send_header("Content-Encoding", "gzip")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body_bytes)

    def _text(self, code, text, content_type):
        """Generated page in the request's encoding."""
        body = text.encode(self.encoding, errors="xmlcharrefreplace" if content_type == "text/html" else "replace")
        self._send(code, body, f"{content_type}; charset={self.encoding}")

    def log_message(self, format, *args):
        # Light logging: errors only. Suppress 200 noise.
        if len(args) >= 2 and str(args[1]) == "200":
            return
        log.info(format, *args)


# ── CLI ──

def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False))


def main(argv=None):
    parser = argparse.ArgumentParser(prog="chmweb", description="Browse CHM files in a web browser")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Serve a CHM file over HTTP")
    p_serve.add_argument("file", help="CHM file")
    p_serve.add_argument("--port", type=int, default=0,
                         help=f"Port to bind (default: first free port from {PORT_RANGE[0]})")
    p_serve.add_argument("--host", default=CHMWEB_HOST)
    p_serve.add_argument("--open", action="store_true", help="Open the default web browser")

    p_info = sub.add_parser("info", help="Show archive metadata")
    p_info.add_argument("file", help="CHM file")

    p_search = sub.add_parser("search", help="Search an archive")
    p_search.add_argument("file", help="CHM file")
    p_search.add_argument("query", help="Search query")
    p_search.add_argument("--regex", action="store_true", help="Treat the query as a regular expression")
    p_search.add_argument("--limit", type=int, default=MAX_SEARCH_RESULTS)

    p_read = sub.add_parser("read", help="Print a page as plain text")
    p_read.add_argument("file", help="CHM file")
    p_read.add_argument("path", help="Page path inside the archive")
    p_read.add_argument("--max-length", type=int, default=MAX_CONTENT_LENGTH)

    p_index = sub.add_parser("index", help="Build the search index for an archive without one")
    p_index.add_argument("file", help="CHM file")

    args = parser.parse_args(argv)
    if args.verbose:
        log.setLevel(logging.DEBUG)
    if not args.command:
        parser.print_help()
        return

    session = ChmWebServer(host=getattr(args, "host", None))

    if args.command == "serve":
        if not session.serve_chm_file(args.file, args.port):
            sys.exit(1)
        url = f"http://localhost:{session.server_port}/@index.html"
        print(f"Server started. Now open your browser and type\n\t {url}")
        if args.open:
            webbrowser.open(url)
        try:
            session.wait()
        except KeyboardInterrupt:
            pass
        finally:
            session.stop_server()
        return

    if not session.open_chm_file(args.file):
        sys.exit(1)

    if args.command == "info":
        _print_json(session.info())

    elif args.command == "search":
        results = session.search(args.query, use_regex=args.regex, max_results=max(args.limit, 0))
        if results is None:
            print(f"Search failed for {args.query!r}", file=sys.stderr)
            sys.exit(1)
        _print_json([{"path": path, "title": title} for path, title in results.items()])

    elif args.command == "read":
        result = session.read_page(args.path, max_length=args.max_length)
        if "error" in result:
            _print_json(result)
            sys.exit(1)
        print(f"# {result['title']}")
        print(f"Source: {result['path']}")
        if result["truncated"]:
            print(f"(Showing {args.max_length} of {result['full_length']} chars)")
        print()
        print(result["content"])

    elif args.command == "index":
        if session.has_prebuilt_index():
            print("Archive has its own search index, nothing to build.")
            return
        engine = session.get_index_engine()
        if engine.is_searchable():
            print(f"Index is up to date: {engine.index_path}")
            return
        engine.start_build()
        last = None
        while True:
            step = engine.get_build_step()
            if step != last:
                print(f"step {step}")
                last = step
            if engine.is_searchable():
                print(f"Index written to {engine.index_path}")
                break
            if step == BUILD_FAILED:
                print("Index build failed", file=sys.stderr)
                sys.exit(1)
            time.sleep(0.2)


if __name__ == "__main__":
    main()
