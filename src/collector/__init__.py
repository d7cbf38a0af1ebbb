from .client import CollectorClient, CollectorTransport, encode_batch

__all__ = ["CollectorClient", "CollectorTransport", "encode_batch"]
