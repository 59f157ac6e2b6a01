"""
Stand-in batch worker for the pool tests.

Usage: fake_worker.py <scenario> <batch_id>, with the job ids to report in
FAKE_JOB_IDS (comma separated). Speaks the same line protocol as
docjobs.workers.batch_worker but does no real work.
"""
import json
import os
import signal
import sys
import time


def send(batch_id, **fields):
    sys.stdout.write(json.dumps({"batch_id": batch_id, **fields}) + "\n")
    sys.stdout.flush()


def report(batch_id, job_id, status, **fields):
    send(batch_id, type="job-progress", job_id=job_id, status=status, **fields)


def hang():
    while True:
        time.sleep(60)


def main():
    scenario, batch_id = sys.argv[1], sys.argv[2]
    job_ids = [int(i) for i in os.environ.get("FAKE_JOB_IDS", "").split(",") if i]

    send(batch_id, type="started", message="Batch processing started")

    if scenario == "complete":
        send(batch_id, type="progress", message=f"Processing batch of {len(job_ids)} jobs...")
        for job_id in job_ids:
            report(batch_id, job_id, "processing")
            report(batch_id, job_id, "completed", message="Completed processing")
        send(batch_id, type="done", message="All jobs completed successfully")
        sys.exit(0)

    if scenario == "garbage":
        sys.stdout.write("this is not json\n")
        send(batch_id, type="no-such-type")
        send("some-other-batch", type="done")
        for job_id in job_ids:
            report(batch_id, job_id, "completed")
        send(batch_id, type="done")
        sys.exit(0)

    if scenario == "fail_one":
        first, rest = job_ids[0], job_ids[1:]
        report(batch_id, first, "processing")
        report(batch_id, first, "failed", error="HTTP 404")
        for job_id in rest:
            report(batch_id, job_id, "completed")
        send(batch_id, type="done")
        sys.exit(0)

    if scenario in ("hang_after_first", "exit_after_first"):
        report(batch_id, job_ids[0], "processing")
        report(batch_id, job_ids[0], "completed")
        report(batch_id, job_ids[1], "processing")
        if scenario == "exit_after_first":
            send(batch_id, type="error", message="Database connection lost")
            sys.exit(3)
        hang()

    if scenario == "cooperative":
        # Runs until the supervisor asks it to stop
        for line in sys.stdin:
            if json.loads(line).get("type") == "shutdown":
                break
        send(batch_id, type="done", message="Processing stopped due to shutdown")
        sys.exit(0)

    if scenario == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        report(batch_id, job_ids[0], "processing")
        hang()

    sys.stderr.write(f"unknown scenario {scenario}\n")
    sys.exit(2)


if __name__ == "__main__":
    main()
