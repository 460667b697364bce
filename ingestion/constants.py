"""Shared constants for the APKG import pipeline."""

# Archive layout
COLLECTION_FILENAMES = ("collection.anki21", "collection.anki2")  # Newest layout first
MEDIA_MANIFEST = "media"

# Anki stores note fields joined by the ASCII unit separator. Some exporters
# write it escaped; candidates are probed in order.
FIELD_SEPARATOR = "\x1f"
SEPARATOR_CANDIDATES = (FIELD_SEPARATOR, "\\\\u001f", "\\u001f")  # Raw, double-escaped, escaped

# Template rendering
MAX_CONDITIONAL_PASSES = 10
SAMPLES_PER_TEMPLATE = 3

# Progress percentages reported to the notification port
PROGRESS_TASK_STARTED = 10
PROGRESS_EXTRACTED = 20
PROGRESS_PARSED = 30
PROGRESS_INGEST_START = 40
PROGRESS_INGEST_END = 60
PROGRESS_FINALIZED = 90
PROGRESS_COMPLETE = 100
PROGRESS_FAILED = -1
