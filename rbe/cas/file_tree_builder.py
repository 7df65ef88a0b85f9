from typing import NamedTuple
from rbe.cas.cas_model import *
from rbe.cas.cas_serialization import *

BuiltTree = NamedTuple("BuiltTree",
    [('root_digest', Digest),
     ('directories', dict[Digest, Directory]),
     ('required_data', list[UploadData])]) # every file and directory blob of the tree, once


class _PendingDirectory(dict):
    pass


def _relative_path_parts(path:str) -> list[str]:
    path = path.replace("\\", "/")
    if path == "" or path.startswith("/"):
        raise ValueError(f"Path must be relative and not empty, but was '{path}'.")
    parts = [part for part in path.split("/") if part != ""]
    if any(part in (".", "..") for part in parts):
        raise ValueError(f"Path must be normalized, but was '{path}'.")
    return parts


class FileTreeBuilder:
    """Collects files and symlinks by root-relative path and builds the Merkle tree of
    directories for them. Directories are implicit: they exist because something is in them."""

    def __init__(self):
        self._root = _PendingDirectory()

    def add_file(self, path:str, input_file:InputFile) -> None:
        self._add(path, input_file)

    def add_symlink(self, path:str, target:str) -> None:
        self._add(path, SymlinkEntry(str(target)))

    def _add(self, path:str, entry:InputFile|SymlinkEntry) -> None:
        parts = _relative_path_parts(path)
        parent = self._root
        for part in parts[:-1]:
            child = parent.setdefault(part, _PendingDirectory())
            if not isinstance(child, _PendingDirectory):
                raise ValueError(f"Cannot add '{path}', because '{part}' was already added as a file or symlink.")
            parent = child
        name = parts[-1]
        existing = parent.get(name)
        if existing is None:
            parent[name] = entry
        elif not _same_entry(existing, entry):
            raise ValueError(f"Cannot add '{path}', a different entry was already added at this path.")

    def build(self) -> BuiltTree:
        directories:dict[Digest, Directory] = {}
        required_data:dict[Digest, UploadData] = {}

        def build_directory(pending:_PendingDirectory) -> Digest:
            directory:Directory = {}
            for name in sorted(pending.keys()):
                value = pending[name]
                if isinstance(value, _PendingDirectory):
                    directory[name] = DirectoryEntry(build_directory(value))
                elif isinstance(value, SymlinkEntry):
                    directory[name] = value
                else:
                    digest = Digest(value.hash, value.size_bytes)
                    directory[name] = FileEntry(digest, value.executable)
                    required_data.setdefault(digest, UploadData(digest, value.content_supplier))
            data = directory_to_bytes(directory)
            digest = get_digest(data)
            directories[digest] = directory
            required_data.setdefault(digest, UploadData(digest, bytes_supplier(data)))
            return digest

        root_digest = build_directory(self._root)
        return BuiltTree(root_digest, directories, list(required_data.values()))


def _same_entry(a:InputFile|SymlinkEntry|_PendingDirectory, b:InputFile|SymlinkEntry) -> bool:
    if isinstance(a, SymlinkEntry) or isinstance(b, SymlinkEntry):
        return a == b
    if isinstance(a, _PendingDirectory):
        return False
    return (a.hash, a.size_bytes, a.executable) == (b.hash, b.size_bytes, b.executable)
