import os
from rbe.cas import *
from rbe.cas.stores import MemoryStorage
from rbe.runtime.remote_execution_server import start_server
from rbe.runtime.remote_execution_client import RemoteExecutionClient

# the declared environment is all a command gets, so the tests pass a PATH explicitly
TEST_ENV = {'PATH': "/usr/bin:/bin"}

class AbortError(Exception):
    def __init__(self, code, details):
        super().__init__(f"{code}: {details}")
        self.code = code
        self.details = details

class FakeContext:
    """Stands in for a grpc.ServicerContext when a servicer is called directly."""
    def abort(self, code, details):
        raise AbortError(code, details)

class CountingStorage(MemoryStorage):
    def __init__(self):
        super().__init__()
        self.get_data_calls = 0

    def get_data(self, digest:Digest):
        self.get_data_calls += 1
        return super().get_data(digest)

def start_test_server(tmp_path, storage=None, read_chunk_size:int|None=None):
    storage = storage if storage is not None else MemoryStorage()
    work_dir = os.path.join(str(tmp_path), "work")
    kwargs = {}
    if read_chunk_size is not None:
        kwargs['read_chunk_size'] = read_chunk_size
    server, port = start_server(storage, work_dir=work_dir, port="0", **kwargs)
    client = RemoteExecutionClient(f"localhost:{port}")
    client.wait_for_sync_channel_ready()
    return server, client, storage, work_dir

def upload_files(client:RemoteExecutionClient, files:dict[str, bytes], executables:set[str]=frozenset()) -> Digest:
    builder = FileTreeBuilder()
    for path, content in files.items():
        digest = get_digest(content)
        builder.add_file(path, InputFile(digest.hash, digest.size_bytes, path in executables, bytes_supplier(content)))
    return client.upload_tree(builder.build())

def upload_command(client:RemoteExecutionClient, argv:list[str], input_root_digest:Digest|None=None,
                   output_files:list[str]|None=None, output_directories:list[str]|None=None) -> Digest:
    if input_root_digest is None:
        input_root_digest = upload_files(client, {})
    command = Command(argv, dict(TEST_ENV), output_files or [], output_directories or [])
    return client.upload_action(command, input_root_digest)
