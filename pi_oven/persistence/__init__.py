from .store import NodeRecord, NodeStore


__all__ = ["NodeRecord", "NodeStore"]
