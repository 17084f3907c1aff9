"""Command line access to the StudyRAG core."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from studyrag.api.schemas import ArtifactModel, DocumentSummary, TurnModel
from studyrag.config import Settings, get_settings
from studyrag.dependencies import AppDependencies, build_dependencies
from studyrag.errors import NoRelevantContextError, StudyRAGError


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _ingest(deps: AppDependencies, args: argparse.Namespace) -> int:
    path: Path = args.path
    document = await deps.pipeline.ingest(path.read_bytes(), path.name)
    _emit(DocumentSummary.from_document(document, indexed=deps.pipeline.is_indexed(document.id)).model_dump(mode="json"))
    return 0


async def _ask(deps: AppDependencies, args: argparse.Namespace) -> int:
    try:
        turn = await deps.orchestrator.answer(args.document_id, args.question, top_k=args.top_k)
    except NoRelevantContextError as exc:
        if exc.turn is None:
            raise
        turn = exc.turn
    _emit(TurnModel.from_turn(turn).model_dump(mode="json"))
    return 0


async def _notes(deps: AppDependencies, args: argparse.Namespace) -> int:
    artifacts = await deps.orchestrator.notes(args.document_id, args.segment or None)
    _emit([ArtifactModel.from_artifact(artifact).model_dump(mode="json") for artifact in artifacts])
    return 0


async def _quiz(deps: AppDependencies, args: argparse.Namespace) -> int:
    artifacts = await deps.orchestrator.quiz(args.document_id, args.segment_index, count=args.count)
    _emit([ArtifactModel.from_artifact(artifact).model_dump(mode="json") for artifact in artifacts])
    return 0


async def _delete(deps: AppDependencies, args: argparse.Namespace) -> int:
    await deps.pipeline.delete(args.document_id)
    _emit({"deleted": args.document_id})
    return 0


async def _list(deps: AppDependencies, args: argparse.Namespace) -> int:
    _emit(
        [
            DocumentSummary.from_document(document, indexed=deps.pipeline.is_indexed(document.id)).model_dump(mode="json")
            for document in deps.pipeline.list()
        ]
    )
    return 0


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="studyrag", description="Study from PDFs with grounded answers, notes and quizzes.")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override the data directory")
    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser("ingest", help="Upload, extract and index a PDF")
    ingest.add_argument("path", type=Path, help="Path to the PDF file")
    ingest.set_defaults(handler=_ingest)

    ask = commands.add_parser("ask", help="Ask a question about a document")
    ask.add_argument("document_id")
    ask.add_argument("question")
    ask.add_argument("--top-k", type=int, default=None, help="Number of chunks to retrieve")
    ask.set_defaults(handler=_ask)

    notes = commands.add_parser("notes", help="Generate study notes per topic segment")
    notes.add_argument("document_id")
    notes.add_argument("--segment", type=int, action="append", default=[], help="Segment index (repeatable)")
    notes.set_defaults(handler=_notes)

    quiz = commands.add_parser("quiz", help="Generate practice questions for one segment")
    quiz.add_argument("document_id")
    quiz.add_argument("segment_index", type=int)
    quiz.add_argument("--count", type=int, default=None, help="Number of questions")
    quiz.set_defaults(handler=_quiz)

    delete = commands.add_parser("delete", help="Delete a document and everything derived from it")
    delete.add_argument("document_id")
    delete.set_defaults(handler=_delete)

    listing = commands.add_parser("list", help="List uploaded documents")
    listing.set_defaults(handler=_list)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None, *, settings: Settings | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = settings or get_settings()
    if args.data_dir is not None:
        settings = settings.model_copy(update={"data_dir": args.data_dir})
    deps = build_dependencies(settings)
    try:
        return asyncio.run(args.handler(deps, args))
    except StudyRAGError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
