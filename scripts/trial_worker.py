from __future__ import annotations

import argparse
import asyncio
import json

from deskplan.core.logging import configure_logging
from deskplan.services.sweeps import (
    run_daily_trial_jobs,
    run_expiration_sweep,
    run_reminder_sweep,
    run_trial_sweep_loop,
    run_usage_alert_sweep,
)


_JOBS = {
    "daily": run_daily_trial_jobs,
    "reminders": run_reminder_sweep,
    "expirations": run_expiration_sweep,
    "usage-alerts": run_usage_alert_sweep,
}


async def _run_once(job: str) -> None:
    report = await _JOBS[job]()
    print(json.dumps(report, default=str))


def main() -> None:
    # Run the trial sweeps on a fixed cadence, or a single pass for cron/operators.
    parser = argparse.ArgumentParser(description="Trial reminder, expiration and usage alert sweeps")
    parser.add_argument("--once", action="store_true", help="run one pass and exit")
    parser.add_argument("--job", default="daily", choices=sorted(_JOBS))
    args = parser.parse_args()
    configure_logging()
    if args.once:
        asyncio.run(_run_once(args.job))
        return
    asyncio.run(run_trial_sweep_loop())


if __name__ == "__main__":
    main()
