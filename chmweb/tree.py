"""Navigation trees for the sidebar.

Two trees are served: the archive's authored topics tree and a files tree
synthesized from the flat entry listing. Both are made of TreeNode objects and
serialized to the nested JSON arrays the sidebar script understands:

  [ child, child, ... ]                 root (level 0)
  [path, title, [ child, ... ]]         expanded branch
  [path, title, "load-by-id", id]       branch cut off at max_level
  [path, title]                         leaf

Cut-off branches are fetched later with ?id=N, which serializes the subtree
rooted at that node with the level reset to 0.
"""

import itertools
import json
import weakref

UI_PREFIX = "/chmweb/"        # server-owned UI resources live here
ESCAPE_PREFIX = "/nonchmweb/"  # archive content that would collide with UI_PREFIX or "/"

LARGE_TREE_THRESHOLD = 10000
LARGE_TREE_MAX_LEVEL = 2
FULL_TREE_MAX_LEVEL = 100

LOAD_BY_ID = "load-by-id"
UNTITLED = "untitled"


def fix_chm_link(path):
    """Map an archive-internal path to the URL a browser should request.

    The server owns "/" (frameset page) and "/chmweb/" (UI resources), so archive
    content under those names is moved under "/nonchmweb/". Already rewritten
    paths pass through unchanged.
    """
    if path == "/":
        return ESCAPE_PREFIX
    if path.startswith(UI_PREFIX):
        return ESCAPE_PREFIX + path[len(UI_PREFIX):]
    return path


def quote_json(text):
    """JSON string literal with "/" escaped as well."""
    if not text:
        return '""'
    return json.dumps(text, ensure_ascii=False).replace("/", "\\/")


class TreeNode:
    """One topic entry or synthesized file/directory node."""

    def __init__(self, path="", title="", parent=None, node_id=0):
        self.id = node_id
        self.path = path
        self.title = title
        self.children = []
        # Non-owning back-reference, only needed while a tree is being built
        self._parent = weakref.ref(parent) if parent is not None else None

    @property
    def parent(self):
        return self._parent() if self._parent is not None else None

    @property
    def is_branch(self):
        return bool(self.children)

    def add_child(self, path, title, node_id=0):
        node = TreeNode(path, title, parent=self, node_id=node_id)
        self.children.append(node)
        return node

    def iter_nodes(self):
        """Depth-first, pre-order walk over this node and its descendants."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def __repr__(self):
        return f"TreeNode(id={self.id}, path={self.path!r}, title={self.title!r}, children={len(self.children)})"


def count_nodes(root):
    if root is None:
        return 0
    return sum(1 for _ in root.iter_nodes())


def choose_max_level(node_count):
    """Shallow expansion for big trees keeps a single response small."""
    if node_count > LARGE_TREE_THRESHOLD:
        return LARGE_TREE_MAX_LEVEL
    return FULL_TREE_MAX_LEVEL


# ── Files tree ──

def build_files_tree(units, home_file):
    """Build a directory tree from a flat, sorted listing of archive entries.

    The listing is depth-first ordered, so every entry lives either in the
    current directory or in one of its ancestors. Intermediate directories that
    have no entry of their own are created on the way down. Nodes whose path
    ends in "/" get the next id; other nodes keep id 0.
    """
    ids = itertools.count()
    root = TreeNode("/", "", node_id=next(ids))

    def add_node(parent, path, title):
        node = parent.add_child(path, title)
        if path.endswith("/"):
            node.id = next(ids)
        return node

    add_node(root, home_file, "Main Page")
    add_node(root, "/", "Root Directory")

    current = root
    for unit in units:
        path = unit.path
        if path == "/":
            continue

        while current is not None and not path.startswith(current.path):
            current = current.parent
        if current is None:
            # Out-of-order listing, nothing sensible left to attach to
            break

        title = path[len(current.path):]
        while title:
            index = title.find("/")
            if index <= 0 or index == len(title) - 1:
                break
            dir_part = title[:index + 1]
            current = add_node(current, current.path + dir_part, dir_part)
            title = title[index + 1:]

        node = add_node(current, path, title)
        if path.endswith("/"):
            current = node

    return root


# ── Serialization ──

def find_subtree_by_id(root, tree_id):
    for node in root.iter_nodes():
        if node.id == tree_id:
            return node
    return None


def select_subtree(root, raw_id):
    """Resolve the ?id= parameter of a tree request.

    Returns the whole tree when the id is missing, non-numeric or not positive,
    the matching subtree otherwise, or None when no node has that id.
    """
    if root is None or raw_id is None:
        return root
    try:
        tree_id = int(raw_id)
    except (TypeError, ValueError):
        return root
    if tree_id > 0:
        return find_subtree_by_id(root, tree_id)
    return root


def write_tree(node, out, max_level, level=0):
    """Append the JSON serialization of ``node`` to the list ``out``."""
    title = node.title or UNTITLED
    path = fix_chm_link(node.path)

    if not node.children:
        if not node.path and title.lower() == UNTITLED:
            out.append("[]")
        else:
            out.append(f"[{quote_json(path)}, {quote_json(title)}]")
        return

    if level == 0:
        out.append("[")
    elif level == max_level:
        if node.id > 0:
            out.append(f'[{quote_json(path)}, {quote_json(title)}, "{LOAD_BY_ID}", {node.id}]\n')
        else:
            out.append(f"[{quote_json(path)}, {quote_json(title)}]\n")
        return
    else:
        out.append(f"[{quote_json(path)}, {quote_json(title)}, [\n")

    last = len(node.children) - 1
    for i, child in enumerate(node.children):
        write_tree(child, out, max_level, level + 1)
        if i != last:
            out.append(", \n")

    out.append("]\n" if level == 0 else "]]")


def serialize_tree(node, max_level=FULL_TREE_MAX_LEVEL):
    out = []
    write_tree(node, out, max_level)
    return "".join(out)
