import errno
import functools
import logging
import os
import stat
from dataclasses import dataclass, field
from typing import Callable, Iterable
from rbe.cas.cas_model import *
from rbe.cas.cas_serialization import get_file_digest
from rbe.cas.file_tree_builder import FileTreeBuilder

logger = logging.getLogger(__name__)

# Adds "complex" inputs to a FileTreeBuilder.
#
# Unlike the FileTreeBuilder, the adder accepts whole directories and paths that have a symlink
# somewhere in their parents. It resolves all of that into plain add_file and add_symlink calls on
# the builder. Nothing outside of the root is ever added: symlinks that point out of the root are
# added as symlinks with an absolute target, but not followed.

FileHasher = Callable[[str], Hash]
DirectoryLister = Callable[[str], Iterable[str] | None]
SymlinkReader = Callable[[str], str | None]

#=========================================================
# Filesystem
#=========================================================
def hash_file(path:str) -> Hash:
    return get_file_digest(path).hash

def list_directory(path:str) -> list[str] | None:
    """Absolute paths of the children, or None if the path is not an enumerable directory."""
    try:
        with os.scandir(path) as entries:
            return sorted(entry.path for entry in entries)
    except (NotADirectoryError, FileNotFoundError):
        return None

def read_symlink(path:str) -> str | None:
    if not os.path.islink(path):
        return None
    return os.readlink(path)

#=========================================================
# Traversal
#=========================================================
@dataclass
class TraversalContext:
    # paths add_input has seen, each path is expanded at most once
    added_inputs:set[str] = field(default_factory=set)
    # path -> canonical path, with every symlink inside the root resolved
    canonical_of:dict[str, str] = field(default_factory=dict)
    # symlinks currently being resolved, to detect cycles
    resolving:set[str] = field(default_factory=set)


class FileInputsAdder:
    """Flattens local paths under a root into file and symlink entries of a FileTreeBuilder.

    add_input() may be called many times, with the same path, or with children or parents of
    paths that were already added; every file and symlink is still added only once. The state for
    this lives in the adder's TraversalContext, so an adder must not be shared between threads.
    """

    def __init__(
            self,
            builder:FileTreeBuilder,
            root:str,
            file_hasher:FileHasher=hash_file,
            directory_lister:DirectoryLister=list_directory,
            symlink_reader:SymlinkReader=read_symlink,
            ):
        if not os.path.isabs(root):
            raise ValueError(f"Root must be an absolute path, but was '{root}'.")
        self._builder = builder
        self._root = os.path.normpath(root)
        self._file_hasher = file_hasher
        self._directory_lister = directory_lister
        self._symlink_reader = symlink_reader
        self._context = TraversalContext()

    @property
    def root(self) -> str:
        return self._root

    def is_in_root(self, path:str) -> bool:
        return path == self._root or path.startswith(self._root.rstrip(os.sep) + os.sep)

    def add_input(self, path:str) -> None:
        """Adds a file, or a directory with all its children, to the builder."""
        if path in self._context.added_inputs:
            return
        if not os.path.isabs(path):
            raise ValueError(f"Expected absolute path, but was '{path}'.")
        self._context.added_inputs.add(path)

        if not self.is_in_root(path):
            return

        target = self._add_single_input(path)

        if self.is_in_root(target):
            children = self._directory_lister(target)
            if children is not None:
                for child in children:
                    self.add_input(child)

    def _add_single_input(self, path:str) -> str:
        """Returns the canonical path of a file or directory, i.e. with all symlinks inside the root
        resolved. Adds every symlink met on the way, and the file itself if it is a regular file."""
        if os.path.normpath(path) != path:
            raise ValueError(f"Expected normalized path, but was '{path}'.")
        context = self._context
        if path in context.canonical_of:
            return context.canonical_of[path]

        if not self.is_in_root(path) or path == self._root:
            context.canonical_of[path] = path
            return path

        literal_parent = os.path.dirname(path)
        parent = literal_parent
        if parent != self._root:
            parent = self._add_single_input(parent)

        if parent != literal_parent:
            # some parent is a symlink, continue from its target
            target = self._add_single_input(os.path.join(parent, os.path.basename(path)))
            context.canonical_of[path] = target
            return target

        symlink_target = self._symlink_reader(path)
        if symlink_target is not None:
            resolved_target = os.path.normpath(os.path.join(parent, symlink_target))
            contained = self.is_in_root(resolved_target)
            fixed_target = os.path.relpath(resolved_target, parent) if contained else resolved_target
            self._builder.add_symlink(os.path.relpath(path, self._root), fixed_target)

            if contained:
                if path in context.resolving:
                    raise OSError(errno.ELOOP, "Too many levels of symbolic links", path)
                context.resolving.add(path)
                try:
                    target = self._add_single_input(resolved_target)
                finally:
                    context.resolving.discard(path)
            else:
                target = resolved_target
            context.canonical_of[path] = target
            return target

        if os.path.isfile(path):
            mode = os.stat(path).st_mode
            self._builder.add_file(
                os.path.relpath(path, self._root),
                InputFile(
                    self._file_hasher(path),
                    os.path.getsize(path),
                    bool(mode & stat.S_IXUSR),
                    functools.partial(open, path, 'rb')))
        context.canonical_of[path] = path
        return path


def add_inputs(builder:FileTreeBuilder, root:str, paths:Iterable[str], **kwargs) -> FileInputsAdder:
    """Adds all paths with a fresh adder (and so a fresh traversal context)."""
    adder = FileInputsAdder(builder, root, **kwargs)
    for path in paths:
        adder.add_input(os.path.normpath(os.path.abspath(path)))
    logger.debug(f"Added inputs under '{adder.root}'.")
    return adder
