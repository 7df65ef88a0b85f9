from typing import BinaryIO, Callable, NamedTuple

# Type aliases and structures that define the object model of the content addressed storage.

Hash = str # lowercase hex sha256 of the bytes of a blob

Digest = NamedTuple("Digest",
    [('hash', Hash),
     ('size_bytes', int)])

# a fresh, independently readable stream on every call
ContentSupplier = Callable[[], BinaryIO]

FileEntry = NamedTuple("FileEntry",
    [('digest', Digest),
     ('executable', bool)])
DirectoryEntry = NamedTuple("DirectoryEntry",
    [('digest', Digest)])
SymlinkEntry = NamedTuple("SymlinkEntry",
    [('target', str)]) # relative to the symlink's parent, or absolute

Entry = FileEntry | DirectoryEntry | SymlinkEntry
Directory = dict[str, Entry] # an entry name must not contain a path separator

Action = NamedTuple("Action",
    [('command_digest', Digest),
     ('input_root_digest', Digest)])

Command = NamedTuple("Command",
    [('argv', list[str]),
     ('environment', dict[str, str]),
     ('output_files', list[str]), # relative to the build dir
     ('output_directories', list[str])])

OutputFile = NamedTuple("OutputFile",
    [('path', str),
     ('digest', Digest),
     ('executable', bool)])
OutputDirectory = NamedTuple("OutputDirectory",
    [('path', str),
     ('tree_digest', Digest)]) # digest of the root directory of the output tree

ActionResult = NamedTuple("ActionResult",
    [('exit_code', int),
     ('stdout', bytes),
     ('stderr', bytes),
     ('output_files', list[OutputFile]),
     ('output_directories', list[OutputDirectory]),
     ('stdout_digest', Digest | None),
     ('stderr_digest', Digest | None)])

# upload side descriptor of a local file
InputFile = NamedTuple("InputFile",
    [('hash', Hash),
     ('size_bytes', int),
     ('executable', bool),
     ('content_supplier', ContentSupplier)])

UploadData = NamedTuple("UploadData",
    [('digest', Digest),
     ('data', ContentSupplier)])
UploadResult = NamedTuple("UploadResult",
    [('digest', Digest),
     ('status', int), # 0 is OK, otherwise a grpc status code value
     ('message', str | None)])
