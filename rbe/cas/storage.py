import io
import logging
import os
import stat
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterable
import grpc
from rbe.cas.cas_model import *
from rbe.cas.cas_serialization import *
from rbe.cas.errors import BlobNotFoundError, DigestMismatchError

logger = logging.getLogger(__name__)

_STATUS_OK = grpc.StatusCode.OK.value[0]
_STATUS_INVALID_ARGUMENT = grpc.StatusCode.INVALID_ARGUMENT.value[0]
_STATUS_INTERNAL = grpc.StatusCode.INTERNAL.value[0]

class ContentAddressedStorage(ABC):
    """Interface of a content addressed blob store.

    Backends only implement the three primitives (contains, load, store). Everything the worker
    needs (missing-blob queries, batch uploads, tree fetches, and materialization of actions onto
    disk) is built on top of those, so all backends behave the same way.

    Implementations must be safe to call from several threads at once.
    """

    @abstractmethod
    def contains(self, digest:Digest) -> bool:
        pass

    @abstractmethod
    def load(self, digest:Digest) -> bytes | None:
        pass

    @abstractmethod
    def store(self, digest:Digest, data:bytes) -> None:
        """Stores already verified data under its digest. Storing an existing digest is a no-op."""
        pass

    #=========================================================
    # Blob API
    #=========================================================
    def find_missing(self, digests:Iterable[Digest]) -> list[Digest]:
        missing = []
        seen = set()
        for digest in digests:
            if digest in seen:
                continue
            seen.add(digest)
            if not self.contains(digest):
                missing.append(digest)
        return missing

    def batch_update_blobs(self, blobs:list[UploadData]) -> list[UploadResult]:
        """Stores every blob independently. The results are in the same order as the input,
        one failing blob does not affect the others."""
        results = []
        for blob in blobs:
            try:
                with blob.data() as stream:
                    data = stream.read()
                actual = get_digest(data)
                if actual != blob.digest:
                    raise DigestMismatchError(
                        f"Blob content has digest '{to_digest_str(actual)}', but was uploaded as '{to_digest_str(blob.digest)}'.")
                self.store(blob.digest, data)
                results.append(UploadResult(blob.digest, _STATUS_OK, None))
            except DigestMismatchError as e:
                results.append(UploadResult(blob.digest, _STATUS_INVALID_ARGUMENT, str(e)))
            except Exception as e:
                logger.exception(f"Failed to store blob '{to_digest_str(blob.digest)}'.")
                results.append(UploadResult(blob.digest, _STATUS_INTERNAL, f"{type(e).__name__}: {e}"))
        return results

    def add_missing(self, blobs:Iterable[UploadData]) -> None:
        """Uploads the blobs that are not stored yet. Raises if any of them could not be stored."""
        by_digest = {}
        for blob in blobs:
            by_digest.setdefault(blob.digest, blob)
        missing = self.find_missing(by_digest.keys())
        if len(missing) == 0:
            return
        logger.debug(f"Adding {len(missing)} missing blobs (of {len(by_digest)}).")
        failed = [r for r in self.batch_update_blobs([by_digest[d] for d in missing]) if r.status != _STATUS_OK]
        if len(failed) > 0:
            raise IOError(f"Failed to add {len(failed)} blobs, first: '{to_digest_str(failed[0].digest)}': {failed[0].message}")

    def get_data(self, digest:Digest) -> BinaryIO:
        data = self.load(digest)
        if data is None:
            raise BlobNotFoundError(digest)
        return io.BytesIO(data)

    def get_bytes(self, digest:Digest, what:str="blob") -> bytes:
        data = self.load(digest)
        if data is None:
            raise BlobNotFoundError(digest, what)
        return data

    #=========================================================
    # Tree API
    #=========================================================
    def get_directory(self, digest:Digest) -> Directory:
        return bytes_to_directory(self.get_bytes(digest, "directory"))

    def get_tree(self, root_digest:Digest) -> list[Directory]:
        """Returns every directory reachable from the root, each distinct directory once, root first."""
        result = []
        seen = {root_digest}
        pending = [root_digest]
        while len(pending) > 0:
            next_pending = []
            for digest in pending:
                directory = self.get_directory(digest)
                result.append(directory)
                for entry in directory.values():
                    if isinstance(entry, DirectoryEntry) and entry.digest not in seen:
                        seen.add(entry.digest)
                        next_pending.append(entry.digest)
            pending = next_pending
        return result

    #=========================================================
    # Materialization API
    #=========================================================
    def materialize_action(self, action_digest:Digest) -> Action:
        return bytes_to_action(self.get_bytes(action_digest, "action"))

    def materialize_inputs(self, build_dir:str, input_root_digest:Digest, command_digest:Digest|None=None) -> Command|None:
        """Writes the input tree into build_dir (which must exist) and returns the command, if one is requested."""
        command = None
        if command_digest is not None:
            command = bytes_to_command(self.get_bytes(command_digest, "command"))
        self._materialize_directory(build_dir, self.get_directory(input_root_digest))
        return command

    def _materialize_directory(self, path:str, directory:Directory) -> None:
        for name, entry in directory.items():
            _enforce_entry_name(name)
            entry_path = os.path.join(path, name)
            if isinstance(entry, DirectoryEntry):
                os.makedirs(entry_path, exist_ok=True)
                self._materialize_directory(entry_path, self.get_directory(entry.digest))
            elif isinstance(entry, FileEntry):
                with open(entry_path, 'wb') as f:
                    f.write(self.get_bytes(entry.digest, "file"))
                if entry.executable:
                    mode = os.stat(entry_path).st_mode
                    os.chmod(entry_path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            elif isinstance(entry, SymlinkEntry):
                os.symlink(entry.target, entry_path)
            else:
                raise TypeError(f"Unknown directory entry type '{type(entry)}' for '{name}'.")


def _enforce_entry_name(name:str) -> str:
    if name in ("", ".", "..") or "/" in name or (os.sep != "/" and os.sep in name):
        raise ValueError(f"Invalid directory entry name '{name}'.")
    return name
