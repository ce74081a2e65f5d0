from .pool import PoolEngine

__all__ = [
    "PoolEngine",
    "RunWorker",
]


def __getattr__(name: str):
    if name == "RunWorker":
        from .runner import RunWorker as _RunWorker
        return _RunWorker
    raise AttributeError(name)
