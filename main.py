"""Cookbook Ingest - recipe ingestion CLI

Runs one ingest task against in-process adapters and prints its events.
"""

import argparse
import asyncio
import json
import sys
import uuid

from cookbook_ingest.adapters.filesystem import FileBlobStore
from cookbook_ingest.adapters.memory import InMemoryDocumentStore, InMemoryTaskBus
from cookbook_ingest.config import settings
from cookbook_ingest.ingest_core.fetch.circuit_breaker import CircuitBreaker
from cookbook_ingest.ingest_core.fetch.service import FetchService
from cookbook_ingest.ingest_core.lifecycle.service import TaskLifecycleService
from cookbook_ingest.ingest_core.orchestrator.runner import IngestPhaseRunner
from cookbook_ingest.ingest_core.search.resolver import build_default_resolver
from cookbook_ingest.llm_client import client
from cookbook_ingest.models.ingest import IngestMode, TaskStatus


def build_payload(args: argparse.Namespace) -> dict:
    payload = {
        "taskId": str(uuid.uuid4()),
        "threadId": args.thread or "cli",
    }
    if args.url:
        payload.update(mode=IngestMode.URL.value, url=args.url)
    else:
        payload.update(mode=IngestMode.QUERY.value, query=args.query)
        if args.provider:
            payload["searchProvider"] = args.provider
    return payload


async def run_ingest(args: argparse.Namespace) -> int:
    store = InMemoryDocumentStore()
    bus = InMemoryTaskBus(store)
    llm = client() if settings.openrouter_api_key else None
    if llm is None:
        print("[!] OPENROUTER_API_KEY not set; LLM extraction and paraphrase repair are disabled")

    runner = IngestPhaseRunner(
        bus,
        store,
        FileBlobStore(settings.artifacts_dir),
        llm=llm,
        fetch_service=FetchService(CircuitBreaker(), respect_robots_txt=not args.no_robots),
        search_resolver=build_default_resolver(),
    )

    payload = build_payload(args)
    print(f"Ingest task: {payload['taskId']}")
    print("-" * 50)

    state = await runner.run(payload)
    for event in bus.events:
        print(event.format(), end="")

    if state.status != TaskStatus.REVIEW_READY:
        error = state.error
        print(f"[!] Failed in {error.phase}: [{error.code}] {error.message}" if error else "[!] Failed")
        return 1

    print(f"{'=' * 50}")
    print("DRAFT:")
    print(f"{'=' * 50}")
    print(json.dumps(state.result, indent=2, ensure_ascii=False))

    if args.commit:
        lifecycle = TaskLifecycleService(store, bus)
        outcome = await lifecycle.commit(payload["taskId"], state.version)
        if not outcome.success:
            print(f"[!] Commit failed: [{outcome.error.code}] {outcome.error.message}")
            return 1
        print(f"\n[+] Committed recipe {outcome.recipe_id}")
        for warning in outcome.warnings:
            print(f"  [~] {warning}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Cookbook Ingest")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", "-u", help="Recipe page to ingest")
    source.add_argument("--query", "-q", help="Search query to discover a recipe page")
    parser.add_argument("--thread", "-t", help="Thread id used for artifact paths")
    parser.add_argument("--provider", "-p", help="Search provider for --query (default: from config)")
    parser.add_argument("--no-robots", action="store_true", help="Ignore robots.txt")
    parser.add_argument("--commit", action="store_true", help="Commit the draft when it is ready")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_ingest(args)))


if __name__ == "__main__":
    main()
