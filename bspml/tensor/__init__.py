from .dense import Matrix, Vector

__all__ = ["Matrix", "Vector"]
