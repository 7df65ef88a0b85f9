import hashlib
import io
import string
from typing import BinaryIO
from rbe.protos import remote_execution_pb2 as re_pb2
from rbe.cas.cas_model import *

_HASH_LEN = 64
_HASH_BUFFER_SIZE = 64*1024

#=========================================================
# Digests
#=========================================================
def get_digest(bytes:bytes | bytearray) -> Digest:
    return Digest(hashlib.sha256(bytes).hexdigest(), len(bytes))

def get_stream_digest(stream:BinaryIO) -> Digest:
    hasher = hashlib.sha256()
    size = 0
    while True:
        chunk = stream.read(_HASH_BUFFER_SIZE)
        if not chunk:
            break
        hasher.update(chunk)
        size += len(chunk)
    return Digest(hasher.hexdigest(), size)

def get_file_digest(path:str) -> Digest:
    with open(path, 'rb') as f:
        return get_stream_digest(f)

def is_hash(hash:Hash) -> bool:
    return isinstance(hash, str) and len(hash) == _HASH_LEN and all(c in string.hexdigits for c in hash)

def is_digest(digest:Digest) -> bool:
    return isinstance(digest, tuple) and len(digest) == 2 and is_hash(digest[0]) and isinstance(digest[1], int) and digest[1] >= 0

def to_digest_str(digest:Digest) -> str:
    return f"{digest.hash}/{digest.size_bytes}"

def to_digest(digest_str:str) -> Digest:
    """Parses a digest in the form of '<hash>/<size>'."""
    hash, sep, size_str = digest_str.partition("/")
    if sep != "/" or not is_hash(hash) or not size_str.isdigit():
        raise ValueError(f"Expected a digest of the form '<hash>/<size>', but got '{digest_str}'.")
    return Digest(hash.lower(), int(size_str))

def bytes_supplier(data:bytes) -> ContentSupplier:
    return lambda: io.BytesIO(data)

def upload_data_from_bytes(data:bytes) -> UploadData:
    return UploadData(get_digest(data), bytes_supplier(data))

#=========================================================
# Proto conversion
#=========================================================
def digest_to_proto(digest:Digest) -> re_pb2.Digest:
    return re_pb2.Digest(hash=digest.hash, size_bytes=digest.size_bytes)

def proto_to_digest(digest:re_pb2.Digest) -> Digest:
    return Digest(digest.hash, digest.size_bytes)

def directory_to_proto(directory:Directory) -> re_pb2.Directory:
    result = re_pb2.Directory()
    for name in sorted(directory.keys()):
        entry = directory[name]
        if isinstance(entry, FileEntry):
            result.files.append(re_pb2.FileNode(
                name=name, digest=digest_to_proto(entry.digest), is_executable=entry.executable))
        elif isinstance(entry, DirectoryEntry):
            result.directories.append(re_pb2.DirectoryNode(
                name=name, digest=digest_to_proto(entry.digest)))
        elif isinstance(entry, SymlinkEntry):
            result.symlinks.append(re_pb2.SymlinkNode(name=name, target=entry.target))
        else:
            raise TypeError(f"Unknown directory entry type '{type(entry)}' for '{name}'.")
    return result

def proto_to_directory(directory:re_pb2.Directory) -> Directory:
    entries = {}
    for node in directory.files:
        entries[node.name] = FileEntry(proto_to_digest(node.digest), node.is_executable)
    for node in directory.directories:
        entries[node.name] = DirectoryEntry(proto_to_digest(node.digest))
    for node in directory.symlinks:
        entries[node.name] = SymlinkEntry(node.target)
    return {name: entries[name] for name in sorted(entries.keys())}

def directory_to_bytes(directory:Directory) -> bytes:
    return directory_to_proto(directory).SerializeToString(deterministic=True)

def bytes_to_directory(bytes:bytes) -> Directory:
    return proto_to_directory(re_pb2.Directory.FromString(bytes))

def action_to_proto(action:Action) -> re_pb2.Action:
    return re_pb2.Action(
        command_digest=digest_to_proto(action.command_digest),
        input_root_digest=digest_to_proto(action.input_root_digest))

def action_to_bytes(action:Action) -> bytes:
    return action_to_proto(action).SerializeToString(deterministic=True)

def bytes_to_action(bytes:bytes) -> Action:
    action = re_pb2.Action.FromString(bytes)
    return Action(proto_to_digest(action.command_digest), proto_to_digest(action.input_root_digest))

def command_to_proto(command:Command) -> re_pb2.Command:
    return re_pb2.Command(
        arguments=list(command.argv),
        environment_variables=[re_pb2.Command.EnvironmentVariable(name=name, value=command.environment[name])
                               for name in sorted(command.environment.keys())],
        output_files=sorted(command.output_files),
        output_directories=sorted(command.output_directories))

def command_to_bytes(command:Command) -> bytes:
    return command_to_proto(command).SerializeToString(deterministic=True)

def bytes_to_command(bytes:bytes) -> Command:
    command = re_pb2.Command.FromString(bytes)
    return Command(
        list(command.arguments),
        {variable.name: variable.value for variable in command.environment_variables},
        list(command.output_files),
        list(command.output_directories))

def action_result_to_proto(result:ActionResult) -> re_pb2.ActionResult:
    proto = re_pb2.ActionResult(
        exit_code=result.exit_code,
        stdout_raw=result.stdout,
        stderr_raw=result.stderr,
        output_files=[re_pb2.OutputFile(path=f.path, digest=digest_to_proto(f.digest), is_executable=f.executable)
                      for f in result.output_files],
        output_directories=[re_pb2.OutputDirectory(path=d.path, tree_digest=digest_to_proto(d.tree_digest))
                            for d in result.output_directories])
    if result.stdout_digest is not None:
        proto.stdout_digest.CopyFrom(digest_to_proto(result.stdout_digest))
    if result.stderr_digest is not None:
        proto.stderr_digest.CopyFrom(digest_to_proto(result.stderr_digest))
    return proto

def proto_to_action_result(result:re_pb2.ActionResult) -> ActionResult:
    return ActionResult(
        result.exit_code,
        result.stdout_raw,
        result.stderr_raw,
        [OutputFile(f.path, proto_to_digest(f.digest), f.is_executable) for f in result.output_files],
        [OutputDirectory(d.path, proto_to_digest(d.tree_digest)) for d in result.output_directories],
        proto_to_digest(result.stdout_digest) if result.HasField("stdout_digest") else None,
        proto_to_digest(result.stderr_digest) if result.HasField("stderr_digest") else None)
