from . memory_storage import MemoryStorage
__all__ = ['MemoryStorage']
