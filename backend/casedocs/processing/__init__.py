"""
Document Processing Package
════════════════════════════

Extraction side of the pipeline:

  File bytes → OCR / direct read → Normalisation → Chunking (+ result caches)

Modules
───────
  ocr.py        OcrProvider interface and the concrete providers
  extractor.py  Routing by file type, the OCR fallback chain, normalisation
  chunking.py   Bounded, overlapping, sentence-respecting chunker
  cache.py      LRU + TTL result caches keyed by document/operation/options
"""

from casedocs.processing.cache import LRUCache, PipelineCaches, make_cache_key
from casedocs.processing.chunking import Chunk, ChunkingOptions, chunk_text
from casedocs.processing.extractor import ExtractionChain, ExtractionResult

__all__ = [
    "Chunk",
    "ChunkingOptions",
    "ExtractionChain",
    "ExtractionResult",
    "LRUCache",
    "PipelineCaches",
    "chunk_text",
    "make_cache_key",
]
