"""Full-text index built by chmweb for archives without a usable one.

The index is an SQLite FTS5 database stored under CHMWEB_DATA_DIR, one per
archive, keyed by the archive's absolute path. It survives restarts: when the
archive's mtime and the schema version still match, the stored index is used
without rebuilding.

Building is slow for large archives, so it runs on a background thread and
reports coarse progress through a BuildState that clients poll:

  -2  failed (terminal until an explicit reset)
  -1  not started
   0  collecting pages
   1  indexing page text
   2  writing the index
   3  ready (searchable)
"""

import hashlib
import logging
import os
import re
import sqlite3
import threading
import time

from chmweb.archive import ENUMERATE_USER, is_directory
from chmweb.search import extract_title, is_html_path, strip_html

log = logging.getLogger("chmweb")

BUILD_FAILED = -2
BUILD_NOT_STARTED = -1
BUILD_COLLECTING = 0
BUILD_INDEXING = 1
BUILD_WRITING = 2
BUILD_DONE = 3

_INDEX_SCHEMA_VERSION = "1"  # bump to force rebuild
_BATCH_SIZE = 500

STOP_WORDS = {"a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
              "has", "have", "how", "i", "in", "is", "it", "its", "my", "not",
              "of", "on", "or", "so", "that", "the", "this", "to", "was", "we",
              "what", "when", "where", "which", "who", "will", "with", "you"}


class BuildState:
    """Monotonic build progress shared between the build thread and request handlers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._step = BUILD_NOT_STARTED

    @property
    def step(self):
        with self._lock:
            return self._step

    def try_start(self):
        """Move from not-started to collecting. False if a build already ran or is running."""
        with self._lock:
            if self._step != BUILD_NOT_STARTED:
                return False
            self._step = BUILD_COLLECTING
            return True

    def advance(self, step):
        with self._lock:
            if self._step != BUILD_FAILED and step > self._step:
                self._step = step

    def fail(self):
        """Terminal: try_start refuses until reset_failed()."""
        with self._lock:
            self._step = BUILD_FAILED

    def reset_failed(self):
        with self._lock:
            if self._step != BUILD_FAILED:
                return False
            self._step = BUILD_NOT_STARTED
            return True


class IndexEngine:
    """Lazily built full-text index for one archive."""

    def __init__(self, archive, chm_path, index_dir):
        self.archive = archive
        self.chm_path = os.path.abspath(chm_path) if chm_path else ""
        self.index_dir = index_dir
        self.state = BuildState()
        self.stop_words = set(STOP_WORDS)
        self._conn = None
        self._conn_lock = threading.Lock()
        self._thread = None

    @property
    def index_path(self):
        name = os.path.splitext(os.path.basename(self.chm_path))[0] or "archive"
        digest = hashlib.sha1(self.chm_path.encode("utf-8")).hexdigest()[:12]
        return os.path.join(self.index_dir, f"{name}-{digest}.db")

    def _archive_mtime(self):
        try:
            return str(os.path.getmtime(self.chm_path))
        except OSError:
            return "0"

    def add_stop_words(self, line):
        """Add the words of one stopwords.txt line; "#" starts a comment."""
        line = line.split("#", 1)[0]
        for word in line.split():
            self.stop_words.add(word.lower())

    def get_build_step(self):
        return self.state.step

    def is_searchable(self):
        with self._conn_lock:
            return self._conn is not None

    # ── Loading ──

    def _index_is_current(self, db_path):
        if not os.path.exists(db_path):
            return False
        try:
            conn = sqlite3.connect(db_path, timeout=5)
            try:
                mtime = conn.execute("SELECT value FROM meta WHERE key='chm_mtime'").fetchone()
                ver = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
                return (mtime is not None and mtime[0] == self._archive_mtime()
                        and ver is not None and ver[0] == _INDEX_SCHEMA_VERSION)
            finally:
                conn.close()
        except sqlite3.Error:
            return False

    def _open(self, db_path):
        conn = sqlite3.connect(db_path, timeout=5, check_same_thread=False)
        with self._conn_lock:
            old, self._conn = self._conn, conn
        if old is not None:
            old.close()

    def read_index(self):
        """Use an index built in an earlier session. True if one was loaded."""
        db_path = self.index_path
        if not self._index_is_current(db_path):
            return False
        try:
            self._open(db_path)
        except sqlite3.Error as e:
            log.warning("Index: could not open %s: %s", db_path, e)
            return False
        self.state.advance(BUILD_DONE)
        log.info("Index: loaded %s", db_path)
        return True

    # ── Building ──

    def start_build(self):
        """Start a background build unless one already ran. Returns the current step."""
        if self.state.try_start():
            self._thread = threading.Thread(target=self._build_guarded, name="chmweb-index", daemon=True)
            self._thread.start()
        return self.state.step

    def build_index(self):
        """Build synchronously. False if a build already ran or is running."""
        if not self.state.try_start():
            return False
        return self._build_guarded()

    def _build_guarded(self):
        try:
            self._build()
        except Exception as e:
            log.warning("Index: build failed for %s: %s", self.chm_path, e)
            self.state.fail()
            return False
        return True

    def reset_failed_build(self):
        """Allow another build after a failed one. False if the last build did not fail."""
        if not self.state.reset_failed():
            return False
        log.info("Index: retrying build for %s", self.chm_path)
        return True

    def _build(self):
        os.makedirs(self.index_dir, exist_ok=True)
        db_path = self.index_path
        tmp_path = db_path + ".tmp"
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        t0 = time.time()

        pages = [u for u in self.archive.enumerate(ENUMERATE_USER)
                 if not is_directory(u) and is_html_path(u.path)]
        self.state.advance(BUILD_INDEXING)

        encoding = self.archive.content_encoding
        count = 0
        conn = sqlite3.connect(tmp_path)
        try:
            conn.execute("PRAGMA synchronous=OFF")
            conn.execute("CREATE VIRTUAL TABLE pages USING fts5(path UNINDEXED, title, body, tokenize='unicode61')")
            conn.execute("CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT)")
            batch = []
            for unit in pages:
                raw = self.archive.retrieve(unit)
                if not raw:
                    continue
                text = raw.decode(encoding, errors="replace")
                title = extract_title(text, default=unit.path.rsplit("/", 1)[-1])
                batch.append((unit.path, title, strip_html(text)))
                if len(batch) >= _BATCH_SIZE:
                    conn.executemany("INSERT INTO pages(path, title, body) VALUES (?,?,?)", batch)
                    conn.commit()
                    count += len(batch)
                    batch.clear()
            if batch:
                conn.executemany("INSERT INTO pages(path, title, body) VALUES (?,?,?)", batch)
                count += len(batch)

            self.state.advance(BUILD_WRITING)
            conn.execute("INSERT INTO pages(pages) VALUES('optimize')")
            conn.execute("INSERT INTO meta VALUES ('schema_version', ?)", (_INDEX_SCHEMA_VERSION,))
            conn.execute("INSERT INTO meta VALUES ('chm_mtime', ?)", (self._archive_mtime(),))
            conn.execute("INSERT INTO meta VALUES ('built_at', ?)", (str(time.time()),))
            conn.execute("INSERT INTO meta VALUES ('page_count', ?)", (str(count),))
            conn.commit()
        except Exception:
            conn.close()
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        conn.close()

        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        os.replace(tmp_path, db_path)
        self._open(db_path)
        self.state.advance(BUILD_DONE)
        log.info("Index: built %s (%d pages, %.1fs)", os.path.basename(db_path), count, time.time() - t0)

    # ── Querying ──

    def _match_expression(self, query, whole_words, titles_only):
        words = re.findall(r"\w+", query.lower())
        kept = [w for w in words if w not in self.stop_words]
        words = kept or words
        if not words:
            return None
        terms = []
        for w in words:
            term = f'"{w}"' if whole_words else f'"{w}"*'
            terms.append(f"title : {term}" if titles_only else term)
        return " AND ".join(terms)

    def search(self, query, whole_words=True, titles_only=False, max_results=0):
        """Return {path: title} ranked by bm25, at most max_results (0 = all)."""
        expr = self._match_expression(query, whole_words, titles_only)
        if expr is None:
            return {}
        sql = "SELECT path, title FROM pages WHERE pages MATCH ? ORDER BY rank"
        args = [expr]
        if max_results:
            sql += " LIMIT ?"
            args.append(max_results)
        with self._conn_lock:
            if self._conn is None:
                return {}
            try:
                rows = self._conn.execute(sql, args).fetchall()
            except sqlite3.Error as e:
                log.debug("Index: query %r failed: %s", expr, e)
                return {}
        results = {}
        for path, title in rows:
            if path not in results:
                results[path] = title
        return results

    def close(self):
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
