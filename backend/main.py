import argparse
import asyncio
import json
import logging
import sys

from trial_eligibility.core.config import settings
from trial_eligibility.core.logging_setup import setup_logging
from trial_eligibility.matching import TrialDatabase, create_matcher
from trial_eligibility.services.llm_service import llm_service
from trial_eligibility.services.review_queue import drug_approval_service, pending_review_store

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=f"{settings.PROJECT_NAME}: match a patient against all trials")
    parser.add_argument("patient", help="Path to a patient response JSON file")
    parser.add_argument("--database", default=settings.TRIAL_DATABASE_PATH,
                        help="Path to the trial database JSON (default: TRIAL_DATABASE_PATH)")
    parser.add_argument("--no-ai", action="store_true", help="Disable the semantic matching step")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


async def run(args) -> dict:
    if not args.database:
        raise SystemExit("No trial database given (use --database or TRIAL_DATABASE_PATH)")

    with open(args.patient, "r", encoding="utf-8") as f:
        patient = json.load(f)

    semantic_client = None if args.no_ai or not llm_service.is_configured else llm_service
    matcher = create_matcher(
        database=TrialDatabase.from_json_file(args.database),
        semantic_client=semantic_client,
        review_queue=pending_review_store,
    )
    results = await matcher.match_patient(patient)

    return {
        "summary": results.summary(),
        "eligible": [t.summary() for t in results.eligible_trials],
        "needs_review": [t.summary() for t in results.needs_review_trials],
        "ineligible": [t.nct_id for t in results.ineligible_trials],
        "pending_reviews": drug_approval_service.get_dashboard_stats(),
    }


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger.info("Starting %s...", settings.PROJECT_NAME)

    output = asyncio.run(run(args))
    json.dump(output, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
