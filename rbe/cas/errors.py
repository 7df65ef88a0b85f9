from rbe.cas.cas_model import Digest

class BlobNotFoundError(Exception):
    digest:Digest

    def __init__(self, digest:Digest, what:str="blob"):
        super().__init__(f"{what} '{digest.hash}/{digest.size_bytes}' not found.")
        self.digest = digest

class DigestMismatchError(ValueError):
    pass
