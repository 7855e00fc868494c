"""
Relance Follow-up Engine - Main Entry Point

Usage:
    # Start the API server:
    python main.py serve

    # Initialize database tables and seed templates/rules:
    python main.py init

    # Seed email templates and follow-up rules:
    python main.py seed

    # Run one batch (dispatch, cleanup, progression):
    python main.py run

    # Deliver due follow-ups:
    python main.py deliver

    # Run the periodic worker (batch + delivery every N seconds):
    python main.py worker [interval]

    # Show follow-up stats:
    python main.py stats

    # Stop follow-ups of a finalized quote or invoice:
    python main.py cleanup <quote|invoice> <id>
"""
import sys
import json
import logging
import os
import uvicorn
from relance.config import APP_HOST, APP_PORT, DEBUG, DATA_DIR, SCHEMA_VERSION, SCHEDULER_INTERVAL_SECONDS
from relance.models import SessionLocal, EmailTemplate, FollowUpRuleRow, EntityType
from relance.errors import InvalidRequest
from relance.pipeline import FollowUpPipeline
from relance.scheduler import run_worker

# Log to stdout so container platforms pick it up
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("relance")


def seed_database(db):
    """Seed the database with email templates and follow-up rules."""
    templates_file = DATA_DIR / "email_templates.json"
    if templates_file.exists():
        existing = db.query(EmailTemplate).count()
        if existing == 0:
            templates = json.loads(templates_file.read_text(encoding="utf-8"))
            for t in templates:
                db.add(EmailTemplate(**t))
            db.commit()
            logger.info(f"Seeded {len(templates)} email templates.")
        else:
            logger.info(f"Email templates already seeded ({existing} templates).")

    rules_file = DATA_DIR / "followup_rules.json"
    if rules_file.exists():
        existing = db.query(FollowUpRuleRow).count()
        if existing == 0:
            rules = json.loads(rules_file.read_text(encoding="utf-8"))
            for r in rules:
                db.add(FollowUpRuleRow(**r))
            db.commit()
            logger.info(f"Seeded {len(rules)} follow-up rules.")
        else:
            logger.info(f"Follow-up rules already seeded ({existing} rules).")


def print_results(title: str, results: dict):
    print(f"\n  {title}")
    print("  " + "=" * 45)
    for key, value in results.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        label = key.replace("_", " ").title()
        print(f"  {label:.<35} {value}")
    print()


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    command = sys.argv[1].lower()
    pipeline = FollowUpPipeline()

    if command == "serve":
        port = int(os.getenv("PORT", APP_PORT))
        pipeline.initialize()

        # Auto-seed on first startup
        db = SessionLocal()
        try:
            seed_database(db)
        finally:
            db.close()

        print(f"\n  Relance API running at http://localhost:{port}")
        print(f"  Schema: {SCHEMA_VERSION}\n")
        uvicorn.run(
            "relance.web.api:app",
            host=APP_HOST,
            port=port,
            reload=DEBUG,
        )

    elif command in ("init", "seed"):
        pipeline.initialize()
        db = SessionLocal()
        try:
            seed_database(db)
        finally:
            db.close()
        print(f"Database initialized and seeded. Schema: {SCHEMA_VERSION}")

    elif command == "run":
        pipeline.initialize()
        db = SessionLocal()
        try:
            results = pipeline.run_batch(db)
            print_results(f"Batch run {results['request_id']}", {
                "dispatch": results["dispatch"],
                "cleanup": results["cleanup"],
                "progression": results["progression"],
            })
        finally:
            db.close()

    elif command == "deliver":
        pipeline.initialize()
        db = SessionLocal()
        try:
            results = pipeline.deliver_due(db)
            print_results(f"Delivery {results['request_id']} via {pipeline.sink.name}", results["results"])
        finally:
            db.close()

    elif command == "worker":
        interval = int(sys.argv[2]) if len(sys.argv) > 2 else SCHEDULER_INTERVAL_SECONDS
        run_worker(poll_interval=interval, pipeline=pipeline)

    elif command == "stats":
        pipeline.initialize()
        db = SessionLocal()
        try:
            print_results("Relance Follow-up Stats", pipeline.get_stats(db))
        finally:
            db.close()

    elif command == "cleanup":
        if len(sys.argv) < 4 or sys.argv[2] not in (EntityType.QUOTE.value, EntityType.INVOICE.value):
            print("Usage: python main.py cleanup <quote|invoice> <id>")
            return

        entity_type, entity_id = sys.argv[2], sys.argv[3]
        pipeline.initialize()
        db = SessionLocal()
        try:
            if entity_type == EntityType.QUOTE.value:
                result = pipeline.cleanup_finalized_quote(db, entity_id, actor="cli")
            else:
                result = pipeline.cleanup_finalized_invoice(db, entity_id, actor="cli")
            print(f"\nResult: {json.dumps(result, indent=2, default=str)}")
        except InvalidRequest as e:
            print(f"Cannot clean up: {e}")
        finally:
            db.close()

    else:
        print(f"Unknown command: {command}")
        print(__doc__)


if __name__ == "__main__":
    main()
