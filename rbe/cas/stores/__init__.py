from . memory import MemoryStorage
from . lmdb import LmdbStorage
__all__ = ['MemoryStorage', 'LmdbStorage']
