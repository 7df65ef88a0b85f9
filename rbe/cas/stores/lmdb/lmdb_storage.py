import contextlib
import logging
import os
import threading
import lmdb
from rbe.cas.cas_model import Digest
from rbe.cas.storage import ContentAddressedStorage

logger = logging.getLogger(__name__)

class LmdbStorage(ContentAddressedStorage):
    """Persists blobs in a single lmdb database, keyed by '<hash>/<size>'."""

    def __init__(self, store_path:str, writemap:bool=False):
        super().__init__()
        self.store_path = store_path
        os.makedirs(self.store_path, exist_ok=True)
        self.env = lmdb.Environment(
            store_path,
            max_dbs=2,
            # writemap=True is a lot faster, but makes the file as big as the mapsize on some file systems
            # See: https://lmdb.readthedocs.io/en/release/#writemap-mode
            writemap=writemap,
            metasync=False,
            # if writemap is False, this is ignored
            map_async=True,
            # 10 MB, is ignored if it's bigger already
            map_size=1024*1024*10,
            )
        self._blobs_db = self.env.open_db('blobs'.encode('utf-8'))
        # lmdb has a single writer anyway, the lock also keeps resizing away from concurrent writes
        self._write_lock = threading.Lock()
        # the map can only be resized while no transaction is open in this process
        self._readers_changed = threading.Condition()
        self._active_readers = 0
        self._resizing = False

    def begin_blobs_txn(self, write=True, buffers=False) -> lmdb.Transaction:
        return self.env.begin(db=self._blobs_db, write=write, buffers=buffers)

    @contextlib.contextmanager
    def _reading(self):
        with self._readers_changed:
            while self._resizing:
                self._readers_changed.wait()
            self._active_readers += 1
        try:
            yield
        finally:
            with self._readers_changed:
                self._active_readers -= 1
                self._readers_changed.notify_all()

    def contains(self, digest:Digest) -> bool:
        with self._reading(), self.begin_blobs_txn(write=False, buffers=True) as txn:
            return txn.get(_make_blob_key(digest), default=None) is not None

    def load(self, digest:Digest) -> bytes | None:
        with self._reading(), self.begin_blobs_txn(write=False) as txn:
            return txn.get(_make_blob_key(digest), default=None)

    def store(self, digest:Digest, data:bytes) -> None:
        key = _make_blob_key(digest)
        with self._write_lock:
            try:
                with self.begin_blobs_txn() as txn:
                    txn.put(key, data, overwrite=False)
            except lmdb.MapFullError:
                logger.warning(f"===> Resizing LMDB map... (blob: {digest.hash}, {len(data)} bytes) <===")
                self._resize(len(data))
                #try again
                with self.begin_blobs_txn() as txn:
                    txn.put(key, data, overwrite=False)

    def _resize(self, min_free:int=0) -> int:
        with self._readers_changed:
            self._resizing = True
            try:
                while self._active_readers > 0:
                    self._readers_changed.wait()
                current_size = self.env.info()['map_size']
                if current_size > 1024*1024*1024*10: # 10 GB
                    multiplier = 1.2
                elif current_size > 1024*1024*1024: # 1 GB
                    multiplier = 1.5
                else: # under 1 GB
                    multiplier = 3.0
                # must be an int, lmdb segfaults later otherwise
                new_size = max(round(current_size * multiplier), current_size + min_free * 2)
                logger.info(f"Resizing LMDB map from {current_size/1024/1024:0.1f} MB to {new_size/1024/1024:0.1f} MB")
                self.env.set_mapsize(new_size)
            finally:
                self._resizing = False
                self._readers_changed.notify_all()
        return new_size

    def close(self) -> None:
        self.env.close()


def _make_blob_key(digest:Digest) -> bytes:
    return f"{digest.hash}/{digest.size_bytes}".encode('ascii')
