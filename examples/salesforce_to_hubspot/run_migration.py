#!/usr/bin/env python3
"""
Example: Salesforce to HubSpot Migration

Usage:
    # Demo with in-memory sample data (no credentials needed)
    python run_migration.py --demo

    # Real migration using config.json; tokens come from
    # SALESFORCE_ACCESS_TOKEN and HUBSPOT_ACCESS_TOKEN
    python run_migration.py --config config.json [--dry-run]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from quillswitch.cli import main as cli_main
from quillswitch.extractors import MemoryExtractor
from quillswitch.loaders import MemoryLoader
from quillswitch.models import (
    MappingSuggestion,
    MigrationRequest,
    ObjectTypeRequest,
    STANDARD_PERFORMANCE_CONFIG,
)
from quillswitch.orchestrator import MigrationOrchestrator
from quillswitch.services.connections import ConnectionRegistry

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


SALESFORCE_CONTACTS = [
    {
        "Id": f"003xx00000{i:05d}",
        "FirstName": f" Person{i} ",
        "LastName": "Example",
        "Email": f"Person{i}@Example.com",
        "Phone": "+1 (555) 123-4567",
        "LastModifiedDate": "2024-01-01T00:00:00.000Z",
    }
    for i in range(1, 251)
]

SALESFORCE_ACCOUNTS = [
    {
        "Id": "001xx000003DIoXAAW",
        "Name": "Acme Corporation",
        "Website": "acme.example.com",
        "Industry": "Technology",
        "LastModifiedDate": "2024-01-01T00:00:00.000Z",
    },
    {
        "Id": "001xx000003DIoYAAW",
        "Name": "Globex",
        "Website": "globex.example.com",
        "Industry": "Manufacturing",
        "LastModifiedDate": "2024-01-01T00:00:00.000Z",
    },
]


async def demo_with_sample_data():
    """Migrate sample Salesforce data into an in-memory HubSpot."""
    registry = ConnectionRegistry()
    registry.register(
        "salesforce",
        extractor=MemoryExtractor(
            "salesforce",
            data={"contacts": SALESFORCE_CONTACTS, "companies": SALESFORCE_ACCOUNTS},
            id_field="Id",
            updated_field="LastModifiedDate",
        ),
    )
    hubspot = MemoryLoader(
        "hubspot",
        schemas={
            "contacts": (["email", "firstname", "lastname", "phone"], ["email"]),
            "companies": (["name", "domain", "industry"], ["name"]),
        },
    )
    registry.register("hubspot", loader=hubspot)

    request = MigrationRequest(
        company_name="Acme Corp",
        source_connection_id="salesforce",
        destination_connection_id="hubspot",
        batch_config=STANDARD_PERFORMANCE_CONFIG,
        object_types=[
            ObjectTypeRequest(
                name="contacts",
                field_mappings=[
                    MappingSuggestion("FirstName", "firstname", 1.0, transformation_rule="trim"),
                    MappingSuggestion("LastName", "lastname", 1.0, transformation_rule="trim"),
                    MappingSuggestion("Email", "email", 1.0, is_required=True, transformation_rule="trim|lowercase"),
                    MappingSuggestion("Phone", "phone", 1.0, transformation_rule="clean_phone"),
                ],
            ),
            # No mappings: suggested from the two schemas
            ObjectTypeRequest(name="companies"),
        ],
    )

    orchestrator = MigrationOrchestrator(registry)
    project = await orchestrator.start(request)
    project = await orchestrator.wait(project.id)
    snapshot = orchestrator.snapshot(project.id)

    logger.info(f"Status: {project.status.value}")
    logger.info(f"Migrated {snapshot.migrated_records}/{snapshot.total_records} records")
    for object_type in ("contacts", "companies"):
        sample = next(iter(hubspot.loaded(object_type).values()), None)
        logger.info(f"Sample {object_type}: {json.dumps(sample)}")


def main():
    parser = argparse.ArgumentParser(description="Salesforce to HubSpot migration")
    parser.add_argument("--demo", action="store_true", help="Run with in-memory sample data")
    parser.add_argument("--config", default=str(Path(__file__).parent / "config.json"))
    parser.add_argument("--dry-run", action="store_true", help="Load into an in-memory destination")
    args = parser.parse_args()

    if args.demo:
        asyncio.run(demo_with_sample_data())
        return 0

    cli_args = ["run", "--config", args.config]
    if args.dry_run:
        cli_args.append("--dry-run")
    return cli_main(cli_args)


if __name__ == "__main__":
    sys.exit(main())
