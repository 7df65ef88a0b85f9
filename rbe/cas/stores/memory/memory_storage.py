from rbe.cas.cas_model import Digest
from rbe.cas.storage import ContentAddressedStorage

class MemoryStorage(ContentAddressedStorage):
    #no locking needed here, because all the dict operations used here are atomic
    _blobs:dict[Digest, bytes]

    def __init__(self):
        super().__init__()
        self._blobs = {}

    def contains(self, digest:Digest) -> bool:
        return digest in self._blobs

    def load(self, digest:Digest) -> bytes | None:
        return self._blobs.get(digest)

    def store(self, digest:Digest, data:bytes) -> None:
        self._blobs.setdefault(digest, bytes(data))

    def __len__(self) -> int:
        return len(self._blobs)
