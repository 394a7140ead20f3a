"""
Manifest Mapper — Ingestion Reconciliation Engine.

Reads shipment manifests with inconsistent column headers, maps them onto a
canonical container schema, persists the result with lineage back to every
raw row, audits what was stored against what was ingested, and learns new
header synonyms so later imports need less inference.

All mappings are confidence-scored and auditable.  No ingested value is
dropped silently: it is stored in a typed column or kept verbatim in the
record's ``unmapped_fields``.
"""

__version__ = "1.0.0"
__author__ = "Manifest Mapper Team"

from manifest_mapper.pipeline import ImportPipeline  # noqa: F401
