from . lmdb_storage import LmdbStorage
__all__ = ['LmdbStorage']
