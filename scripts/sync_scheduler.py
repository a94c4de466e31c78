"""
Pulse Hub — Sync Scheduler
============================
Runs the scheduled sync jobs in order with step tracking and run logging to
Supabase. Meant for cron: one invocation, one sync_runs row.

Jobs:
    token-refresh   Facebook tokens near expiry
    sync            Unified integration sync (every connected platform)
    gaps            Calendly gap detection with corrective syncs
    status-refresh  Calendly upcoming-event status refresh
    health          Integration health scores and alerts
    aggregate       Daily page-view rollups (last 7 days)

Usage:
    python scripts/sync_scheduler.py                        # every job
    python scripts/sync_scheduler.py --job gaps             # one job
    python scripts/sync_scheduler.py --project-id <uuid>    # one project
    python scripts/sync_scheduler.py --remote               # call a deployed API instead
    python scripts/sync_scheduler.py --dry-run              # log steps without executing
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup
# ---------------------------------------------------------------------------
SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, insert_row, utc_now
from scripts.lib.utils import safe_request

logger = setup_logger("sync_scheduler")

# ---------------------------------------------------------------------------
# Job definitions: name -> (label, remote path)
# ---------------------------------------------------------------------------
JOBS = {
    "token-refresh": ("Facebook Token Refresh", "/api/facebook/token-refresh-all"),
    "sync": ("Unified Integration Sync", "/api/sync/run-all"),
    "gaps": ("Calendly Gap Detection", "/api/calendly/gap-detection"),
    "status-refresh": ("Calendly Status Refresh", "/api/calendly/status-refresh"),
    "health": ("Integration Health Check", "/api/sync/health-check"),
    "aggregate": ("Daily Aggregation", "/api/analytics/daily-aggregation"),
}


# ---------------------------------------------------------------------------
# Job execution
# ---------------------------------------------------------------------------
async def run_local(job: str, project_id: Optional[str] = None) -> Dict:
    """Run a job in-process and return its result dict."""
    if job == "token-refresh":
        from scripts.sync.facebook_sync import refresh_all_tokens
        return await refresh_all_tokens()
    if job == "sync":
        from scripts.sync.scheduler import run_all
        return await run_all(project_id)
    if job == "gaps":
        from scripts.sync.gap_detection import detect_gaps
        return await detect_gaps(project_id)
    if job == "status-refresh":
        from scripts.sync.calendly_sync import refresh_statuses
        return await refresh_statuses(project_id)
    if job == "health":
        from scripts.sync.health_monitor import check_health
        return await check_health(project_id)
    if job == "aggregate":
        from scripts.analytics.aggregation import aggregate_daily_metrics
        return aggregate_daily_metrics(project_id)
    raise ValueError(f"Unknown job: {job}")


def run_remote(job: str, project_id: Optional[str] = None) -> Dict:
    """POST the job to a deployed API (PULSE_API_URL, PULSE_API_KEY)."""
    base_url = os.getenv("PULSE_API_URL")
    if not base_url:
        raise RuntimeError("PULSE_API_URL must be set for --remote")

    headers = {"Content-Type": "application/json"}
    if os.getenv("PULSE_API_KEY"):
        headers["X-API-Key"] = os.getenv("PULSE_API_KEY")

    body = {"projectId": project_id} if project_id else {}
    response = safe_request(
        base_url.rstrip("/") + JOBS[job][1],
        method="POST",
        timeout=300,
        json=body,
        headers=headers,
    )
    if response is None:
        raise RuntimeError(f"Remote call for {job} failed")
    return response.json()


def run_jobs(jobs: List[str], project_id: Optional[str] = None,
             dry_run: bool = False, remote: bool = False) -> List[dict]:
    """
    Run jobs sequentially; a failing job never stops the next one.

    Returns:
        List of step result dicts.
    """
    results = []
    for job in jobs:
        label = JOBS[job][0]
        if dry_run:
            logger.info("[DRY RUN] Would run: %s (%s)", label, job)
            results.append({
                "name": label, "job": job, "status": "skipped", "duration_ms": 0, "error": None,
            })
            continue

        logger.info("Running: %s", label)
        start = time.time()
        error = None
        try:
            result = run_remote(job, project_id) if remote else asyncio.run(run_local(job, project_id))
            if isinstance(result, dict) and result.get("success") is False:
                error = result.get("error") or result.get("message") or "Job reported failure"
        except Exception as e:
            error = str(e)
        duration = time.time() - start

        if error:
            logger.warning("%s failed in %.1fs: %s, continuing", label, duration, error)
        else:
            logger.info("%s completed in %.1fs", label, duration)
        results.append({
            "name": label,
            "job": job,
            "status": "failed" if error else "success",
            "duration_ms": round(duration * 1000),
            "error": error,
        })
    return results


# ---------------------------------------------------------------------------
# Run tracking (Supabase)
# ---------------------------------------------------------------------------
def create_sync_run(jobs: List[str], project_id: Optional[str] = None) -> Optional[str]:
    """Create a sync_runs record and return its ID."""
    row = insert_row("sync_runs", {
        "started_at": utc_now(),
        "status": "running",
        "jobs": jobs,
        "project_id": project_id,
        "steps": [],
    })
    if row is None:
        logger.warning("Failed to create sync run record")
        return None
    logger.info("Sync run created: %s", row.get("id"))
    return row.get("id")


def finish_sync_run(run_id, status: str, steps: List[dict], error_log: str = None):
    """Update a sync_runs record with results."""
    if run_id is None:
        return
    try:
        get_client().table("sync_runs").update({
            "finished_at": utc_now(),
            "status": status,
            "steps": steps,
            "error_log": error_log,
        }).eq("id", run_id).execute()
        logger.info("Sync run %s updated: %s", run_id, status)
    except Exception as e:
        logger.warning("Failed to update sync run %s: %s", run_id, e)


def overall_status(steps: List[dict]) -> str:
    failed = sum(1 for s in steps if s["status"] == "failed")
    if not failed:
        return "success"
    return "failed" if failed == len(steps) else "partial"


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: List[str] = None) -> int:
    parser = argparse.ArgumentParser(description="Pulse Hub Sync Scheduler")
    parser.add_argument(
        "--job", choices=["all", *JOBS], default="all", help="Run only a specific job",
    )
    parser.add_argument("--project-id", help="Limit jobs to one project")
    parser.add_argument("--dry-run", action="store_true", help="Log steps without executing")
    parser.add_argument("--remote", action="store_true", help="Call PULSE_API_URL instead of running in-process")
    args = parser.parse_args(argv)

    jobs = list(JOBS) if args.job == "all" else [args.job]

    logger.info("=" * 60)
    logger.info("  PULSE HUB — Sync Scheduler")
    logger.info("=" * 60)
    if args.dry_run:
        logger.info("  Mode: DRY RUN")
    elif args.remote:
        logger.info("  Mode: REMOTE (%s)", os.getenv("PULSE_API_URL", "unset"))

    started = time.time()
    steps: List[dict] = []
    run_id = None if args.dry_run else create_sync_run(jobs, args.project_id)

    try:
        steps = run_jobs(jobs, args.project_id, dry_run=args.dry_run, remote=args.remote)
    except KeyboardInterrupt:
        logger.warning("Scheduler interrupted by user")
        finish_sync_run(run_id, "failed", steps, "Interrupted by user")
        return 130

    failed = [s for s in steps if s["status"] == "failed"]
    logger.info("=" * 60)
    logger.info("  Jobs: %d  Failed: %d  Duration: %.1fs", len(steps), len(failed), time.time() - started)
    for step in steps:
        icon = {"success": "OK", "failed": "FAIL"}.get(step["status"], "SKIP")
        logger.info(
            "  [%4s] %-26s %6dms%s",
            icon, step["name"], step["duration_ms"],
            f"  {step['error'][:80]}" if step["error"] else "",
        )
    logger.info("=" * 60)

    error_log = "\n".join(f"{s['name']}: {s['error']}" for s in failed) or None
    finish_sync_run(run_id, overall_status(steps), steps, error_log)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
