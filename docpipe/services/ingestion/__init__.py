"""Document ingestion pipeline.

Stages, in execution order:

1. **TextExtractor** -- raw bytes to plain text (PDF, DOCX, text formats).
2. **ContentAnalyzer** -- classify the text as code, prose, mixed or unknown.
3. **AdaptiveConfigurator** -- pick chunk size, overlap and batching from
   the text length and content type.
4. **SemanticChunker** -- split along structural boundaries within the
   token budget measured by **TokenEstimator**.
5. **EmbeddingBatchProcessor** -- embed and persist chunks in parallel,
   retried batches.

**IngestionService** runs the stages for one document and owns its status
transitions; **StalenessWatchdog** fails runs that died without reporting.
"""

from docpipe.services.ingestion.adaptive_config import AdaptiveConfigurator, SizeTier
from docpipe.services.ingestion.batch_processor import EmbeddingBatchProcessor
from docpipe.services.ingestion.chunker import SemanticChunker
from docpipe.services.ingestion.content_analyzer import ContentAnalyzer
from docpipe.services.ingestion.ingestion_service import IngestionService
from docpipe.services.ingestion.progress_tracker import ProgressTracker
from docpipe.services.ingestion.staleness_watchdog import StalenessWatchdog
from docpipe.services.ingestion.text_extractor import TextExtractor
from docpipe.services.ingestion.token_estimator import TokenEstimator

__all__ = [
    "AdaptiveConfigurator",
    "ContentAnalyzer",
    "EmbeddingBatchProcessor",
    "IngestionService",
    "ProgressTracker",
    "SemanticChunker",
    "SizeTier",
    "StalenessWatchdog",
    "TextExtractor",
    "TokenEstimator",
]
