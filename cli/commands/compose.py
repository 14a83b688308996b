"""Survey composition command: compose."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict

from cli.core import get_model, load_index, output_json, run_async


def _requirement_payload(args: argparse.Namespace) -> Dict[str, Any]:
    """Requirement JSON file merged with command-line overrides."""
    payload: Dict[str, Any] = {}
    req_path = getattr(args, "requirement", None)
    if req_path:
        payload = json.loads(Path(req_path).read_text(encoding="utf-8"))
    overrides = {
        "language": getattr(args, "language", None),
        "requested_count": getattr(args, "count", None),
        "industry": getattr(args, "industry", None),
        "target_metrics": getattr(args, "metric", None),
        "keyword_expansions": getattr(args, "keyword", None),
        "category_constraints": getattr(args, "category", None),
    }
    payload.update({k: v for k, v in overrides.items() if v is not None})
    return payload


def cmd_compose(args: argparse.Namespace) -> None:
    """Load the catalog, compose one draft and print it as JSON."""
    from survey_composer.engine.config import RERANK_ENABLED
    from survey_composer.engine.pipeline import SurveyComposer
    from survey_composer.models import SurveyRequirement

    index = load_index(args.catalog, getattr(args, "vector_backend", None))
    requirement = SurveyRequirement.from_dict(_requirement_payload(args))

    reranker = None
    if getattr(args, "rerank", False) or RERANK_ENABLED:
        from survey_composer.reranker import OpenAIReranker
        reranker = OpenAIReranker(index.snapshot)

    model = get_model() if getattr(args, "embed", False) else None
    composer = SurveyComposer(index, reranker=reranker, embedding_model=model)
    draft = run_async(composer.compose_async(requirement))

    print(
        f"Composed {len(draft)}/{requirement.requested_count} questions "
        f"(catalog {draft.catalog_version})",
        file=sys.stderr,
    )
    result = {"ok": True, **draft.to_dict()}
    if getattr(args, "with_text", False):
        snapshot = index.snapshot()
        result["questions"] = [
            {"id": qid, "language": snapshot[qid].language, "text": snapshot[qid].text}
            for qid in draft.question_ids
        ]
    output_json(result)
