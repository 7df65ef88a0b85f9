import asyncio
import logging
import grpc
from rbe.protos import remote_execution_pb2 as re_pb2
from rbe.protos import remote_execution_pb2_grpc as re_pb2_grpc
from rbe.cas import *
from rbe.cas.file_tree_builder import BuiltTree
from .remote_execution_server import make_resource_name, GRPC_OPTIONS, MAX_MESSAGE_BYTES

logger = logging.getLogger(__name__)

# small blobs are grouped into batches of up to this size
MAX_BATCH_BYTES = 2*1024*1024
# a bigger blob is sent in a batch of its own, the rest of the message is left for the request framing
MAX_BLOB_BYTES = MAX_MESSAGE_BYTES - 1024*1024

class RemoteExecutionClient:
    """Connects to a remote execution worker.

    The stub getters give raw access to the four services (sync and async). The helper methods
    are all sync and cover the usual client flow: upload the inputs, upload the action, execute
    it, and fetch outputs and logs.
    """

    def __init__(self, server_address:str="localhost:50051", instance_name:str=""):
        self.server_address = server_address
        self.instance_name = instance_name
        # the async and sync api cannot share a channel, but two channels with the same
        # configuration share the underlying connection
        self.channel_sync = grpc.insecure_channel(self.server_address, options=GRPC_OPTIONS)
        # created lazily, an aio channel must be created inside a running event loop
        self._channel_async:grpc.aio.Channel|None = None

    def get_channel_sync(self) -> grpc.Channel:
        return self.channel_sync

    def get_channel_async(self) -> grpc.aio.Channel:
        if self._channel_async is None:
            self._channel_async = grpc.aio.insecure_channel(self.server_address, options=GRPC_OPTIONS)
        return self._channel_async

    async def wait_for_async_channel_ready(self, timeout_seconds:float=30):
        try:
            await asyncio.wait_for(self.get_channel_async().channel_ready(), timeout_seconds)
        except asyncio.TimeoutError as e:
            raise asyncio.TimeoutError(f"{type(self).__name__}: Timeout waiting for {timeout_seconds} seconds for channel to be ready.") from e

    def wait_for_sync_channel_ready(self, timeout_seconds:float=30):
        grpc.channel_ready_future(self.channel_sync).result(timeout=timeout_seconds)

    def get_cas_stub_sync(self):
        return re_pb2_grpc.ContentAddressableStorageStub(self.channel_sync)

    def get_cas_stub_async(self):
        return re_pb2_grpc.ContentAddressableStorageStub(self.get_channel_async())

    def get_bytestream_stub_sync(self):
        return re_pb2_grpc.ByteStreamStub(self.channel_sync)

    def get_bytestream_stub_async(self):
        return re_pb2_grpc.ByteStreamStub(self.get_channel_async())

    def get_execution_stub_sync(self):
        return re_pb2_grpc.ExecutionStub(self.channel_sync)

    def get_execution_stub_async(self):
        return re_pb2_grpc.ExecutionStub(self.get_channel_async())

    def get_operations_stub_sync(self):
        return re_pb2_grpc.OperationsStub(self.channel_sync)

    def get_operations_stub_async(self):
        return re_pb2_grpc.OperationsStub(self.get_channel_async())

    async def close(self, grace_period=1.0):
        if self._channel_async is not None:
            await self._channel_async.close(grace_period)
        self.channel_sync.close()

    def close_sync(self):
        self.channel_sync.close()

    #=========================================================
    # CAS helpers
    #=========================================================
    def find_missing_blobs(self, digests:list[Digest]) -> list[Digest]:
        response:re_pb2.FindMissingBlobsResponse = self.get_cas_stub_sync().FindMissingBlobs(
            re_pb2.FindMissingBlobsRequest(
                instance_name=self.instance_name,
                blob_digests=[digest_to_proto(d) for d in digests]))
        return [proto_to_digest(d) for d in response.missing_blob_digests]

    def batch_update_blobs(self, blobs:list[tuple[Digest, bytes]]) -> list[UploadResult]:
        response:re_pb2.BatchUpdateBlobsResponse = self.get_cas_stub_sync().BatchUpdateBlobs(
            re_pb2.BatchUpdateBlobsRequest(
                instance_name=self.instance_name,
                requests=[re_pb2.BatchUpdateBlobsRequest.Request(digest=digest_to_proto(digest), data=data)
                          for digest, data in blobs]))
        return [UploadResult(proto_to_digest(r.digest), r.status.code, r.status.message or None)
                for r in response.responses]

    def upload_blobs(self, blobs:list[UploadData]) -> list[UploadResult]:
        """Uploads the blobs the server does not have yet, in batches. Returns the results of the uploaded blobs."""
        by_digest = {}
        for blob in blobs:
            by_digest.setdefault(blob.digest, blob)
        missing = self.find_missing_blobs(list(by_digest.keys()))
        results = []
        batch = []
        batch_size = 0
        too_large = [d for d in missing if d.size_bytes > MAX_BLOB_BYTES]
        if len(too_large) > 0:
            raise ValueError(f"Blob '{to_digest_str(too_large[0])}' is larger than {MAX_BLOB_BYTES} bytes and cannot be uploaded.")
        for digest in missing:
            if digest.size_bytes > MAX_BATCH_BYTES:
                with by_digest[digest].data() as stream:
                    results.extend(self.batch_update_blobs([(digest, stream.read())]))
                continue
            if batch_size + digest.size_bytes > MAX_BATCH_BYTES:
                results.extend(self.batch_update_blobs(batch))
                batch = []
                batch_size = 0
            with by_digest[digest].data() as stream:
                batch.append((digest, stream.read()))
            batch_size += digest.size_bytes
        if len(batch) > 0:
            results.extend(self.batch_update_blobs(batch))
        failed = [r for r in results if r.status != grpc.StatusCode.OK.value[0]]
        if len(failed) > 0:
            logger.warning(f"{len(failed)} of {len(results)} uploads failed, first: '{to_digest_str(failed[0].digest)}': {failed[0].message}")
        return results

    def upload_tree(self, tree:BuiltTree) -> Digest:
        self.upload_blobs(tree.required_data)
        return tree.root_digest

    def upload_action(self, command:Command, input_root_digest:Digest) -> Digest:
        """Uploads the command and the action, returns the action digest."""
        command_data = upload_data_from_bytes(command_to_bytes(command))
        action_data = upload_data_from_bytes(action_to_bytes(Action(command_data.digest, input_root_digest)))
        self.upload_blobs([command_data, action_data])
        return action_data.digest

    def get_tree(self, root_digest:Digest) -> list[Directory]:
        response:re_pb2.GetTreeResponse = self.get_cas_stub_sync().GetTree(
            re_pb2.GetTreeRequest(instance_name=self.instance_name, root_digest=digest_to_proto(root_digest)))
        return [proto_to_directory(d) for d in response.directories]

    #=========================================================
    # ByteStream & Execution helpers
    #=========================================================
    def read_blob(self, digest:Digest) -> bytes:
        result = bytearray()
        for response in self.get_bytestream_stub_sync().Read(
                re_pb2.ReadRequest(resource_name=make_resource_name(digest, self.instance_name))):
            result.extend(response.data)
        return bytes(result)

    def execute(self, action_digest:Digest) -> ActionResult:
        operation:re_pb2.Operation = self.get_execution_stub_sync().Execute(
            re_pb2.ExecuteRequest(instance_name=self.instance_name, action_digest=digest_to_proto(action_digest)))
        if operation.HasField("error"):
            raise RuntimeError(f"Execution of '{to_digest_str(action_digest)}' failed: {operation.error.message}")
        return proto_to_action_result(operation.response.result)
