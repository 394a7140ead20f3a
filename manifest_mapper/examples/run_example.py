#!/usr/bin/env python3
"""
Example: Manifest Import Demo.

Runs two batches from different forwarders through the pipeline and
prints the proposal, audit outcome and what the learner picked up.

Run from the project root:
    python -m manifest_mapper.examples.run_example
"""

from __future__ import annotations

import json
import logging

from manifest_mapper.config import MappingConfig, PipelineConfig
from manifest_mapper.pipeline import ImportPipeline


# ======================================================================
# Helper
# ======================================================================

def print_section(title: str) -> None:
    width = 72
    print("\n" + "=" * width)
    print(f"  {title}")
    print("=" * width)


def print_status(pipeline: ImportPipeline, batch_id: str) -> None:
    status = pipeline.status(batch_id)
    print(json.dumps(status.to_dict(), indent=2, ensure_ascii=False))
    for run in pipeline.stage_log(batch_id):
        print(f"  {run.stage:<18} {run.status.value:<10} {run.output_summary}")


# ======================================================================
# Demo batches
# ======================================================================

FORWARDER_A = [
    {
        "headers": ["Container #", "LFD", "ETA", "Carrier", "Status", "Booking Ref"],
        "data": {
            "Container #": "MSCU1234567",
            "LFD": 45301,
            "ETA": "2024-01-05",
            "Carrier": "MSC",
            "Status": "arr",
            "Booking Ref": "BK-1001",
        },
    },
    {
        "headers": ["Container #", "LFD", "ETA", "Carrier", "Status", "Booking Ref"],
        "data": {
            "Container #": "TGHU7654321",
            "LFD": "15-Jan-2024",
            "ETA": "2024-01-09",
            "Carrier": "CMA CGM",
            "Status": "DIS",
            "Booking Ref": "BK-1002",
        },
    },
]

FORWARDER_B = [
    {
        "headers": ["Cntr#", "Free Time Expiry", "Weight (kg)", "Vessel Nm"],
        "data": {
            "Cntr#": "OOLU1112223",
            "Free Time Expiry": "2024-02-01",
            "Weight (kg)": "12,400 kg",
            "Vessel Nm": "EVER GIVEN",
        },
    },
]


def main() -> None:
    pipeline = ImportPipeline(
        PipelineConfig(mapping=MappingConfig(fuzzy_threshold=70.0), log_level=logging.WARNING)
    )

    print_section("Batch A — known headers")
    pipeline.ingest("forwarder-a", FORWARDER_A)
    pipeline.run("forwarder-a")
    print_status(pipeline, "forwarder-a")

    print_section("Batch B — unfamiliar headers")
    pipeline.ingest("forwarder-b", FORWARDER_B)
    status = pipeline.run("forwarder-b")
    if status.requires_confirmation:
        proposal = status.proposal
        mapping = {f: m.source_header for f, m in proposal.field_mappings.items()}
        mapping.setdefault("containerNumber", "Cntr#")
        pipeline.confirm("forwarder-b", mapping)
        pipeline.run("forwarder-b")
    print_status(pipeline, "forwarder-b")

    print_section("Learned dictionary entries")
    for record in pipeline.improvements("forwarder-a") + pipeline.improvements("forwarder-b"):
        print(f"  {record.unmapped_header!r:<24} -> {record.candidate_canonical_field} "
              f"({record.confidence:.2f}) {record.action.value}")


if __name__ == "__main__":
    main()
