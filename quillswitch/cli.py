"""Command line entry point for running and inspecting migrations."""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .exceptions import UnknownObjectTypeError
from .models.migration import MigrationConfig
from .models.project import MigrationProject, ObjectTypeStatus, ProjectStatus
from .orchestrator import MigrationOrchestrator
from .services.connections import ConnectionRegistry
from .services.field_mapper import FieldMapper
from .services.llm_inference import LLMMappingAdvisor
from .services.schema_resolver import SchemaResolver
from .storage import JsonFileMigrationStore, MigrationStore

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="QuillSwitch - Migrate CRM data between systems"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    run_parser = subparsers.add_parser("run", help="Run a migration")
    run_parser.add_argument("--config", required=True, help="Path to migration config file")
    run_parser.add_argument("--dry-run", action="store_true", help="Load into an in-memory destination")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Suggest mappings
    suggest_parser = subparsers.add_parser("suggest", help="Suggest field mappings")
    suggest_parser.add_argument("--source-fields", required=True, help="Comma separated source fields")
    suggest_parser.add_argument("--destination-fields", required=True, help="Comma separated destination fields")
    suggest_parser.add_argument("--required", help="Comma separated required destination fields")
    suggest_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Describe schema
    schema_parser = subparsers.add_parser("schema", help="Show the fields of an object type")
    schema_parser.add_argument("--config", required=True, help="Path to migration config file")
    schema_parser.add_argument("--connection", required=True, help="Connection id")
    schema_parser.add_argument("--object", required=True, help="Object type, e.g. contacts")
    schema_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # HTTP API
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "run":
        return run_migration(args)
    elif args.command == "suggest":
        return run_suggest(args)
    elif args.command == "schema":
        return run_schema(args)
    elif args.command == "serve":
        return run_server(args)
    parser.print_help()
    return 1


def load_config(path: str) -> MigrationConfig:
    with open(path) as f:
        return MigrationConfig.from_dict(json.load(f))


def build_orchestrator(config: MigrationConfig) -> MigrationOrchestrator:
    """Wire connections, state store and mapper for a config file."""
    store = JsonFileMigrationStore(config.state_file) if config.state_file else MigrationStore()
    registry = ConnectionRegistry.from_config(config.connections)
    if config.dry_run:
        registry.use_dry_run_destination(config.request.destination_connection_id)

    advisor = None
    if config.use_ai_mapping:
        advisor = LLMMappingAdvisor(
            api_key=config.llm_api_key,
            model=config.llm_model,
            provider=config.llm_provider,
        )
    return MigrationOrchestrator(registry, store=store, field_mapper=FieldMapper(store, advisor=advisor))


def find_resumable(orchestrator: MigrationOrchestrator, config: MigrationConfig) -> Optional[MigrationProject]:
    """Latest paused project created from the same request, if any."""
    request = config.request.to_dict()
    for project in orchestrator.store.list_projects():
        if project.status == ProjectStatus.PAUSED and project.metadata.get("request") == request:
            return project
    return None


async def _run(orchestrator: MigrationOrchestrator, config: MigrationConfig) -> MigrationProject:
    orchestrator.recover_interrupted()

    project = find_resumable(orchestrator, config)
    if project is not None:
        print(f"Resuming project {project.id} ({project.status_reason or 'paused'})")
        project = await orchestrator.resume(project.id)
    else:
        project = await orchestrator.start(config.request)

    if project.status == ProjectStatus.SCHEDULED:
        print(f"Project {project.id} scheduled ('{config.request.schedule.cron}'), "
              f"next run {project.metadata.get('next_run')}. Press Ctrl+C to stop.")
        await asyncio.Event().wait()

    return await orchestrator.wait(project.id)


def run_migration(args) -> int:
    """Run a migration from config file."""
    config = load_config(args.config)

    if args.dry_run:
        config.dry_run = True

    orchestrator = build_orchestrator(config)
    try:
        project = asyncio.run(_run(orchestrator, config))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 130

    snapshot = orchestrator.snapshot(project.id)

    print("\n" + "=" * 60)
    print("MIGRATION FINISHED" if project.status.is_terminal else "MIGRATION PAUSED")
    print("=" * 60)
    print(f"Project: {project.id}")
    print(f"Status: {project.status.value}" + (f" ({project.status_reason})" if project.status_reason else ""))
    print(f"Records: {snapshot.total_records}")
    print(f"Migrated: {snapshot.migrated_records}")
    print(f"Failed: {snapshot.failed_records}")
    print(f"Progress: {snapshot.percentage}%")
    if project.duration_seconds:
        print(f"Duration: {project.duration_seconds:.2f} seconds")

    for object_type in orchestrator.store.list_object_types(project.id):
        line = f"  {object_type.name}: {object_type.status.value}, " \
               f"{object_type.migrated_records}/{object_type.total_records} migrated"
        if object_type.status == ObjectTypeStatus.NEEDS_MAPPING:
            line += f" - {object_type.status_reason}"
        print(line)

    if snapshot.errors:
        print(f"\n{snapshot.errors} unresolved errors:")
        for error_type, errors in orchestrator.errors(project.id)["by_type"].items():
            print(f"  {error_type}: {len(errors)} ({errors[0]['suggested_remediation']})")

    return 0 if project.status in (ProjectStatus.COMPLETED, ProjectStatus.COMPLETED_WITH_ERRORS) else 1


def _split(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def run_suggest(args) -> int:
    """Print mapping suggestions for two field lists."""
    required = _split(args.required) if args.required is not None else None
    result = FieldMapper().suggest_mappings(
        _split(args.source_fields), _split(args.destination_fields), required
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if not result.needs_manual_mapping else 2


def run_schema(args) -> int:
    """Print the fields of an object type on a connection."""
    config = load_config(args.config)
    registry = ConnectionRegistry.from_config(config.connections)
    if args.connection not in registry:
        print(f"Unknown connection: {args.connection}", file=sys.stderr)
        return 1

    try:
        result = SchemaResolver(registry).get_schema(args.connection, args.object)
    except UnknownObjectTypeError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def run_server(args) -> int:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("quillswitch.api.main:create_app", factory=True, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
