"""
Run the renewal batch once without going through the HTTP endpoint.
Run: python -m scripts.run_renewals
"""
import json
import logging

from entitlement_api.db.session import SessionLocal
from entitlement_api.services.renewal_service import run_renewals

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    db = SessionLocal()
    try:
        report = run_renewals(db)
    finally:
        db.close()

    failed = [r for r in report.renewals if r.error]
    logger.info(f"Processed {report.processed} renewals, {len(failed)} failed")
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
