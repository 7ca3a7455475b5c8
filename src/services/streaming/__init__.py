"""Init file for chapter stream services."""

from .frame_decoder import Frame, FrameDecoder
from .normalizer import NormalizerConfig, StreamingNormalizer, normalize_prose
from .session import SessionOptions, StreamSession
from .title_filter import TitleExtractionFilter, UnterminatedTitlePolicy


__all__ = [
    "Frame",
    "FrameDecoder",
    "NormalizerConfig",
    "StreamingNormalizer",
    "normalize_prose",
    "SessionOptions",
    "StreamSession",
    "TitleExtractionFilter",
    "UnterminatedTitlePolicy",
]
