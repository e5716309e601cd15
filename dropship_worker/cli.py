import argparse
import asyncio
import json
import logging
import sys

from dropship_worker.services import job_queue as jobs

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("dropship_worker.cli")


def run_worker_command(args):
    from dropship_worker.session_factory import session_factory
    from dropship_worker.worker import run_worker

    logger.info("[CLI] Starting fulfillment worker")
    asyncio.run(run_worker(session_factory))


def init_db_command(args):
    from dropship_worker.db import engine
    from dropship_worker.models import Base

    Base.metadata.create_all(engine)
    logger.info("[CLI] Tables created")


def enqueue_command(args):
    from dropship_worker.session_factory import session_factory

    queue = jobs.JobQueue(session_factory)
    kind = args.kind

    if kind == "toggle":
        data = {"shopId": args.shop_id, "active": not args.off}
        job = queue.add(jobs.TOGGLE_AUTO_SHIPPING, data)
    elif kind == "poll":
        job = queue.add(jobs.POLL_SHOP, {"shopId": args.shop_id})
    elif kind == "process":
        job = queue.add(jobs.PROCESS_ORDER, {"shopeeOrderId": args.order_id, "shopId": args.shop_id})
    elif kind == "retry":
        from dropship_worker.services.browser.amazon_automation import AmazonAutomation
        from dropship_worker.services.browser.session_pool import SessionPool
        from dropship_worker.services.order_pipeline import OrderPipeline

        pipeline = OrderPipeline(session_factory, queue, AmazonAutomation(SessionPool()))
        print(json.dumps(pipeline.retry_order(args.order_id, source=args.source)))
        return
    elif kind == "verify":
        job = queue.add(jobs.VERIFY_CREDENTIALS, {"shopId": args.shop_id})
    elif kind == "scrape-preview":
        job = queue.add(jobs.SCRAPE_PREVIEW, {"productUrl": args.url})
    else:
        logger.error(f"[CLI] Unsupported job kind: {kind}")
        sys.exit(1)

    print(json.dumps({"jobId": str(job.id), "name": job.name, "data": job.data}))


def queue_status_command(args):
    from dropship_worker.session_factory import session_factory

    queue = jobs.JobQueue(session_factory)
    print(json.dumps({
        "jobs": queue.counts(),
        "repeatables": [r.key for r in queue.get_repeatable_jobs()],
    }))


def main():
    parser = argparse.ArgumentParser(description="Dropship fulfillment worker CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run-worker", help="Run the job worker until SIGINT/SIGTERM")
    subparsers.add_parser("init-db", help="Create tables")
    subparsers.add_parser("queue-status", help="Show job counts and repeatable registrations")

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a job")
    enqueue_sub = enqueue_parser.add_subparsers(dest="kind")

    toggle = enqueue_sub.add_parser("toggle", help="Enable/disable auto shipping polling for a shop")
    toggle.add_argument("shop_id")
    toggle.add_argument("--off", action="store_true")

    poll = enqueue_sub.add_parser("poll", help="Poll a shop once")
    poll.add_argument("shop_id")

    process = enqueue_sub.add_parser("process", help="Process an order")
    process.add_argument("order_id")
    process.add_argument("--shop-id", default=None)

    retry = enqueue_sub.add_parser("retry", help="Operator retry of an order")
    retry.add_argument("order_id")
    retry.add_argument("--source", default="CLI")

    verify = enqueue_sub.add_parser("verify", help="Verify shop credentials")
    verify.add_argument("shop_id")

    preview = enqueue_sub.add_parser("scrape-preview", help="Scrape a product page")
    preview.add_argument("url")

    args = parser.parse_args()

    try:
        if args.command == "run-worker":
            run_worker_command(args)
        elif args.command == "init-db":
            init_db_command(args)
        elif args.command == "queue-status":
            queue_status_command(args)
        elif args.command == "enqueue" and args.kind:
            enqueue_command(args)
        else:
            parser.print_help()
    except (LookupError, ValueError) as e:
        logger.error(f"[CLI] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
