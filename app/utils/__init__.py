from app.utils.identifiers import Identifier, mask_identifier, normalize_identifier
from app.utils.locks import KeyedLock

__all__ = ["Identifier", "KeyedLock", "mask_identifier", "normalize_identifier"]
