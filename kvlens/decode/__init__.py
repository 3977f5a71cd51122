from .base import DecodedValue, DecoderEntry
from .chain import DecoderChain, default_entries

__all__ = ["DecodedValue", "DecoderEntry", "DecoderChain", "default_entries"]
