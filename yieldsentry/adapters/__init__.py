from .base import BaseAdapter
from .defillama import DefiLlamaAdapter

__all__ = ["BaseAdapter", "DefiLlamaAdapter"]
