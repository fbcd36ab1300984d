"""
Demo entry point: runs a small Starlette app on every worker of a cluster.

    python -m workercluster --workers 2 --auto-restart --limit 3 --port 3000

Then try http://localhost:3000/, /cluster/healthcheck and /cluster/stats, and
send SIGQUIT (or Ctrl+C) to the master to drain the pool.
"""
import os
import sys
import logging
import argparse
from starlette.routing import Route
from starlette.requests import Request
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from workercluster import WorkerCluster
from workercluster.log import setup_logging
from workercluster.web.server import serve

log = logging.getLogger("workercluster")


async def hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse(f"Process {os.getpid()} says hello!")


def parse_args(argv):
    parser = argparse.ArgumentParser(prog="workercluster", description="Run a demo worker cluster.")
    parser.add_argument("--workers", type=int, default=None, help="Number of workers (default: CPU count).")
    parser.add_argument("--auto-restart", action="store_true", default=None, help="Replace workers that die.")
    parser.add_argument("--limit", type=int, default=None, help="Restarts allowed per worker slot.")
    parser.add_argument("--host", default=None, help="Host to bind the shared socket on.")
    parser.add_argument("--port", type=int, default=3000, help="Port to bind the shared socket on.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    app = Starlette(routes=[Route("/", endpoint=hello)])
    cluster = WorkerCluster(
        workers=args.workers,
        auto_restart=args.auto_restart,
        auto_restart_limit=args.limit,
        bind_host=args.host,
        bind_port=args.port,
    )
    cluster.attach_diagnostics(app)
    cluster.run(lambda worker: serve(app, worker))
    log.info("Cluster stopped.")


if __name__ == "__main__":
    main()
