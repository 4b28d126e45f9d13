"""Decode Asylum Research ARDF force maps into typed records."""
from .records import (
    BlankSlot,
    MalformedRecord,
    Record,
    UnknownTag,
    ZeroSizeRecord,
    decode,
    decode_all,
    iter_records,
    walk,
)
from .forcemap import ForceMap, MissingRequiredRecord
