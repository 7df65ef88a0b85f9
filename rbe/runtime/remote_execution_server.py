import contextlib
import logging
import os
import re
import shutil
import stat
from concurrent import futures
from typing import Iterable, Iterator
import grpc
from grpc import Server
from rbe.protos import remote_execution_pb2 as re_pb2
from rbe.protos import remote_execution_pb2_grpc as re_pb2_grpc
from rbe.cas import *
from rbe.cas.storage import ContentAddressedStorage
from .action_runner import ActionRunner

logger = logging.getLogger(__name__)

BYTESTREAM_READ_CHUNK_SIZE = 1024*1024
# blobs are uploaded with BatchUpdateBlobs only, so a single message must fit the largest blob
MAX_MESSAGE_BYTES = 64*1024*1024
GRPC_OPTIONS = [
    ("grpc.max_send_message_length", MAX_MESSAGE_BYTES),
    ("grpc.max_receive_message_length", MAX_MESSAGE_BYTES),
    ]

RESOURCE_NAME_PATTERN = re.compile(r"([^/]*)/blobs/([^/]+)/([0-9]+)")

class InvalidResourceNameError(ValueError):
    pass

def parse_resource_name(resource_name:str) -> tuple[str, Digest]:
    """Parses '<instance>/blobs/<hash>/<size>' into the instance name and the digest."""
    match = RESOURCE_NAME_PATTERN.fullmatch(resource_name)
    if match is None:
        raise InvalidResourceNameError(f"Invalid resource name '{resource_name}', expected '<instance>/blobs/<hash>/<size>'.")
    return match.group(1), Digest(match.group(2), int(match.group(3)))

def make_resource_name(digest:Digest, instance_name:str="") -> str:
    return f"{instance_name}/blobs/{digest.hash}/{digest.size_bytes}"


def _abort_with(context:grpc.ServicerContext, e:Exception, what:str):
    """Translates an exception into a grpc status. Never returns."""
    if isinstance(e, BlobNotFoundError):
        context.abort(grpc.StatusCode.NOT_FOUND, str(e))
    elif isinstance(e, ValueError):
        context.abort(grpc.StatusCode.INVALID_ARGUMENT, str(e))
    logger.exception(f"{what} failed.")
    context.abort(grpc.StatusCode.INTERNAL, f"{what} failed: {type(e).__name__}: {e}")


class ContentAddressableStorage(re_pb2_grpc.ContentAddressableStorageServicer):

    def __init__(self, storage:ContentAddressedStorage) -> None:
        super().__init__()
        self._storage = storage

    def FindMissingBlobs(self, request: re_pb2.FindMissingBlobsRequest, context):
        try:
            missing = self._storage.find_missing([proto_to_digest(d) for d in request.blob_digests])
        except Exception as e:
            _abort_with(context, e, "FindMissingBlobs")
        return re_pb2.FindMissingBlobsResponse(
            missing_blob_digests=[digest_to_proto(d) for d in missing])

    def BatchUpdateBlobs(self, request: re_pb2.BatchUpdateBlobsRequest, context):
        try:
            results = self._storage.batch_update_blobs([
                UploadData(proto_to_digest(r.digest), bytes_supplier(r.data)) for r in request.requests])
        except Exception as e:
            _abort_with(context, e, "BatchUpdateBlobs")
        responses = []
        for result in results:
            status = re_pb2.Status(code=result.status)
            if result.status != grpc.StatusCode.OK.value[0]:
                status.message = result.message or ""
            responses.append(re_pb2.BatchUpdateBlobsResponse.Response(
                digest=digest_to_proto(result.digest),
                status=status))
        return re_pb2.BatchUpdateBlobsResponse(responses=responses)

    def GetTree(self, request: re_pb2.GetTreeRequest, context):
        try:
            tree = self._storage.get_tree(proto_to_digest(request.root_digest))
        except Exception as e:
            _abort_with(context, e, "GetTree")
        return re_pb2.GetTreeResponse(directories=[directory_to_proto(d) for d in tree])


class ByteStream(re_pb2_grpc.ByteStreamServicer):

    def __init__(self, storage:ContentAddressedStorage, chunk_size:int=BYTESTREAM_READ_CHUNK_SIZE) -> None:
        super().__init__()
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, but was {chunk_size}.")
        self._storage = storage
        self._chunk_size = chunk_size

    def Read(self, request: re_pb2.ReadRequest, context) -> Iterator[re_pb2.ReadResponse]:
        try:
            _, digest = parse_resource_name(request.resource_name)
            if request.read_offset < 0 or request.read_limit < 0:
                raise ValueError("read_offset and read_limit must not be negative.")
        except Exception as e:
            _abort_with(context, e, "Read")
        if request.read_offset > digest.size_bytes:
            context.abort(grpc.StatusCode.OUT_OF_RANGE,
                f"read_offset {request.read_offset} is past the end of blob '{to_digest_str(digest)}'.")
        try:
            data = self._storage.get_data(digest)
        except Exception as e:
            _abort_with(context, e, "Read")
        with data:
            data.seek(request.read_offset)
            remaining = request.read_limit if request.read_limit > 0 else None
            while remaining is None or remaining > 0:
                size = self._chunk_size if remaining is None else min(self._chunk_size, remaining)
                chunk = data.read(size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield re_pb2.ReadResponse(data=chunk)

    def Write(self, request_iterator: Iterable[re_pb2.WriteRequest], context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "Write is not supported, upload blobs with BatchUpdateBlobs.")

    def QueryWriteStatus(self, request: re_pb2.QueryWriteStatusRequest, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "QueryWriteStatus is not supported, upload blobs with BatchUpdateBlobs.")


@contextlib.contextmanager
def scratch_directory(work_dir:str, input_root_digest:Digest) -> Iterator[str]:
    """A fresh directory under work_dir, removed again when the context exits, no matter how."""
    # a random suffix is enough to keep concurrent executions of the same input root apart
    build_dir = os.path.join(work_dir, f"{input_root_digest.hash}-{os.urandom(8).hex()}")
    os.makedirs(build_dir)
    logger.debug(f"Created scratch directory '{build_dir}'.")
    try:
        yield build_dir
    finally:
        _remove_scratch_directory(build_dir)

def _remove_scratch_directory(build_dir:str) -> None:
    # a failed cleanup is logged, it must not replace the result (or the error) of the execution
    try:
        shutil.rmtree(build_dir)
    except OSError:
        logger.warning(f"Failed to remove scratch directory '{build_dir}', retrying with write permissions restored.")
        try:
            _make_writable(build_dir)
            shutil.rmtree(build_dir)
        except OSError:
            logger.exception(f"Failed to remove scratch directory '{build_dir}'.")
            return
    logger.debug(f"Removed scratch directory '{build_dir}'.")

def _make_writable(build_dir:str) -> None:
    # the command may have left directories that cannot be listed or modified
    os.chmod(build_dir, stat.S_IRWXU)
    for dir_path, dir_names, _ in os.walk(build_dir):
        for dir_name in dir_names:
            path = os.path.join(dir_path, dir_name)
            if not os.path.islink(path):
                os.chmod(path, stat.S_IRWXU)


class Execution(re_pb2_grpc.ExecutionServicer):

    def __init__(self, storage:ContentAddressedStorage, work_dir:str, runner:ActionRunner|None=None) -> None:
        super().__init__()
        self._storage = storage
        self._work_dir = work_dir
        self._runner = runner or ActionRunner()
        os.makedirs(self._work_dir, exist_ok=True)

    def execute(self, action_digest:Digest) -> ActionResult:
        """Materializes the action into a scratch directory, runs it, and backfills the produced
        blobs into storage. A failing command is a normal result with a non-zero exit code."""
        action = self._storage.materialize_action(action_digest)
        with scratch_directory(self._work_dir, action.input_root_digest) as build_dir:
            command = self._storage.materialize_inputs(build_dir, action.input_root_digest, action.command_digest)
            run_result = self._runner.run_action(
                command.argv,
                command.environment,
                command.output_files,
                command.output_directories,
                build_dir)
            self._storage.add_missing(run_result.required_data)
        return run_result.action_result

    def Execute(self, request: re_pb2.ExecuteRequest, context):
        action_digest = proto_to_digest(request.action_digest)
        logger.info(f"Executing action '{to_digest_str(action_digest)}'.")
        try:
            result = self.execute(action_digest)
        except Exception as e:
            _abort_with(context, e, "Execute")
        return re_pb2.Operation(
            name=f"executions/{action_digest.hash}-{os.urandom(8).hex()}",
            done=True,
            response=re_pb2.ExecuteResponse(
                result=action_result_to_proto(result),
                cached_result=False,
                status=re_pb2.Status(code=grpc.StatusCode.OK.value[0])))


class Operations(re_pb2_grpc.OperationsServicer):
    # Execute is synchronous and only ever returns finished operations, so there is nothing to poll or cancel.

    def ListOperations(self, request: re_pb2.ListOperationsRequest, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "ListOperations is not supported.")

    def GetOperation(self, request: re_pb2.GetOperationRequest, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "GetOperation is not supported.")

    def DeleteOperation(self, request: re_pb2.DeleteOperationRequest, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "DeleteOperation is not supported.")

    def CancelOperation(self, request: re_pb2.CancelOperationRequest, context):
        context.abort(grpc.StatusCode.UNIMPLEMENTED, "CancelOperation is not supported.")


def add_services_to_server(
        server:Server,
        storage:ContentAddressedStorage,
        work_dir:str,
        read_chunk_size:int=BYTESTREAM_READ_CHUNK_SIZE,
        ) -> None:
    re_pb2_grpc.add_ContentAddressableStorageServicer_to_server(ContentAddressableStorage(storage), server)
    re_pb2_grpc.add_ByteStreamServicer_to_server(ByteStream(storage, read_chunk_size), server)
    re_pb2_grpc.add_ExecutionServicer_to_server(Execution(storage, work_dir), server)
    re_pb2_grpc.add_OperationsServicer_to_server(Operations(), server)


def start_server(
        storage:ContentAddressedStorage,
        work_dir:str|None=None,
        port:str|None=None,
        max_workers:int=10,
        read_chunk_size:int=BYTESTREAM_READ_CHUNK_SIZE,
        ) -> tuple[Server, int]:
    """Starts the worker and returns the server and the port it is bound to. Port '0' picks a free port."""
    if work_dir is None:
        work_dir = os.getenv("RBE_WORK_DIR", None)
        if work_dir is None:
            raise ValueError("No work dir provided, pass one or set RBE_WORK_DIR.")
    if port is None:
        port = os.getenv("RBE_PORT", "50051")

    # the storage and the runner are blocking, so a plain threaded (non-async) server is used
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers), options=GRPC_OPTIONS)
    add_services_to_server(server, storage, work_dir, read_chunk_size)
    bound_port = server.add_insecure_port("[::]:" + str(port))
    server.start()
    logger.info(f"Remote execution server started, listening on {bound_port}, work dir '{work_dir}'.")
    return server, bound_port
