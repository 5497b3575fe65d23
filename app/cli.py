import argparse
import asyncio
import logging
import signal
import sys
import threading
import uuid

from sqlalchemy import select

from app.db import SessionLocal
from app.models import Product
from app.settings import settings

logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)
logger = logging.getLogger("app.cli")

cancel_event = threading.Event()


def _handle_sigint(signum, frame):
    logger.warning("[CLI] Cancellation requested, finishing current item")
    cancel_event.set()


def _parse_ids(raw: list[str] | None) -> list[uuid.UUID] | None:
    if not raw:
        return None
    return [uuid.UUID(value) for value in raw]


def run_nightly_rollup(session, args) -> int:
    from app.services.pricing.offer_store import OfferStore
    from app.services.pricing.rollup import RollupEngine

    if not args.skip_stale:
        counts = OfferStore(session).deactivate_stale_offers()
        logger.info(f"[CLI] Stale offers deactivated: {counts}")

    result = RollupEngine(session).recompute_rollups(_parse_ids(args.product_ids), cancel_event=cancel_event)
    logger.info(f"[CLI] Rollup: processed={result.processed} errors={len(result.errors)} cancelled={result.cancelled}")
    return 1 if result.errors else 0


def run_evaluate_rules(session, args) -> int:
    from app.services.pricing.rule_engine import PricingRuleEngine

    rule_id = uuid.UUID(args.rule_id) if args.rule_id else None
    result = PricingRuleEngine(session).evaluate_rules(
        rule_id=rule_id,
        product_ids=_parse_ids(args.product_ids),
        cancel_event=cancel_event,
        dry_run=args.dry_run,
    )
    if args.dry_run:
        for proposal in result.proposals:
            guard = " [guarded]" if proposal.blocked_by_guard else ""
            print(
                f"{proposal.product_id} {proposal.old_price_excl_tax} -> {proposal.new_price_excl_tax} "
                f"({proposal.price_change_percent}%) margin {proposal.old_margin_percent} -> {proposal.new_margin_percent} "
                f"rule={proposal.rule_name}{guard}"
            )
    logger.info(
        f"[CLI] Rules: proposed={result.proposed} skipped={result.skipped} "
        f"auto_applied={result.auto_applied} errors={len(result.errors)} "
        f"auto_apply_errors={len(result.auto_apply_errors)} reasons={dict(result.skip_reasons)}"
    )
    return 1 if result.errors or result.auto_apply_errors else 0


def run_rollback_price(session, args) -> int:
    from app.services.pricing.errors import PricingError
    from app.services.pricing.workflow import AdjustmentWorkflow

    try:
        inverse = AdjustmentWorkflow(session).rollback_price_change(uuid.UUID(args.log_id), args.actor)
    except PricingError as e:
        logger.error(f"[CLI] Rollback refused: {e}")
        return 1
    logger.info(f"[CLI] Restored {inverse.new_price_excl_tax} on product {inverse.product_id}")
    return 0


def run_detect_alerts(session, args) -> int:
    from app.services.pricing.alerts import AlertEngine

    counts = AlertEngine(session).detect_alerts(_parse_ids(args.product_ids))
    logger.info(f"[CLI] Alerts: {counts}")
    return 1 if counts.get("errors") else 0


def run_ingest_competitors(session, args) -> int:
    from app.services.pricing.competitor_ingestion import CompetitorIngestionService

    product_ids = _parse_ids(args.product_ids)
    if product_ids is None:
        product_ids = session.execute(
            select(Product.id).where(Product.is_active.is_(True)).order_by(Product.id)
        ).scalars().all()

    result = asyncio.run(CompetitorIngestionService(session).ingest_competitor_prices(product_ids))
    logger.info(f"[CLI] Competitor ingestion: {result}")
    return 0


COMMANDS = {
    "nightly-rollup": run_nightly_rollup,
    "evaluate-rules": run_evaluate_rules,
    "rollback-price": run_rollback_price,
    "detect-alerts": run_detect_alerts,
    "ingest-competitors": run_ingest_competitors,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pricing pipeline operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    rollup_parser = subparsers.add_parser("nightly-rollup", help="Deactivate stale offers and recompute rollups")
    rollup_parser.add_argument("--product-id", dest="product_ids", action="append", help="Limit to product id (repeatable)")
    rollup_parser.add_argument("--skip-stale", action="store_true", help="Do not deactivate stale supplier offers")

    rules_parser = subparsers.add_parser("evaluate-rules", help="Evaluate pricing rules into adjustments")
    rules_parser.add_argument("--rule-id", help="Evaluate a single rule")
    rules_parser.add_argument("--product-id", dest="product_ids", action="append", help="Limit to product id (repeatable)")
    rules_parser.add_argument("--dry-run", action="store_true", help="Print proposals without storing or applying them")

    rollback_parser = subparsers.add_parser("rollback-price", help="Restore the price replaced by a change log entry")
    rollback_parser.add_argument("log_id", help="Price change log id")
    rollback_parser.add_argument("--actor", required=True, help="Who performs the rollback")

    alerts_parser = subparsers.add_parser("detect-alerts", help="Scan products and raise pricing alerts")
    alerts_parser.add_argument("--product-id", dest="product_ids", action="append", help="Limit to product id (repeatable)")

    ingest_parser = subparsers.add_parser("ingest-competitors", help="Fetch competitor prices")
    ingest_parser.add_argument("--product-id", dest="product_ids", action="append", help="Limit to product id (repeatable)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    signal.signal(signal.SIGINT, _handle_sigint)

    session = SessionLocal()
    try:
        return COMMANDS[args.command](session, args)
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        return 1
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
