import argparse
import logging
import uuid

from namedlock.client import DEFAULT_BASE_URL, run_acquire, run_hold_release, run_order, run_parallel, run_process
from namedlock.config import ConfigurationError, load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def serve(args):
    # imported here so that client-only use does not need the server stack
    import uvicorn

    from namedlock.api import create_database_app

    cfg = load_config(getattr(args, "config", None))
    if getattr(args, "host", None):
        cfg.host = args.host
    if getattr(args, "port", None):
        cfg.port = args.port
    configure_logging(cfg.log_level)
    logging.getLogger(__name__).info("Server is running on http://%s:%s", cfg.host, cfg.port)
    uvicorn.run(create_database_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())
    return 0


def init_database(args):
    from namedlock.lib.database import get_engine, init_db

    cfg = load_config(getattr(args, "config", None))
    engine = get_engine(cfg.database_url)
    init_db(engine)
    engine.dispose()
    print(f"Tables created in {engine.url.render_as_string(hide_password=True)}")
    return 0


def history(args, session=None):
    """Print lock_history rows for one lock name, newest first."""
    from namedlock.lib.database import get_engine, get_sessionmaker
    from namedlock.services.repository import Repository

    engine = None
    if session is None:
        cfg = load_config(getattr(args, "config", None))
        engine = get_engine(cfg.database_url)
        session = get_sessionmaker(engine)()
    try:
        entries = Repository(session).list_lock_history(args.lock_name, limit=getattr(args, "limit", 50) or 50)
        if not entries:
            print(f"No history for lock '{args.lock_name}'")
            return 0
        for e in entries:
            released = e.released_at.isoformat() if e.released_at else "-"
            print(f"{e.id}\t{e.session_id}\t{e.status}\t{e.acquired_at}\t{released}")
    finally:
        session.close()
        if engine is not None:
            engine.dispose()
    return 0


def clients(args):
    """Start the concurrent client harness against a running server."""
    base_url = getattr(args, "base_url", None) or DEFAULT_BASE_URL
    mode = args.mode
    if mode in ("hold", "h"):
        hold = args.hold_duration if args.hold_duration and args.hold_duration > 0 else 5
        print(f"Mode: acquire-hold-release, hold duration {hold}s")
        run_parallel(args.start_id, args.parallel, args.lock_name or "test_lock", run_hold_release, hold, base_url=base_url)
    elif mode in ("process", "p"):
        print("Mode: acquire-process-release")
        run_parallel(args.start_id, args.parallel, args.product_code or "P001", run_process, args.quantity, base_url=base_url)
    elif mode in ("order", "o"):
        code = args.product_code or str(uuid.uuid4())
        print(f"Mode: acquire-order-release for product {code}")
        run_parallel(args.start_id, args.parallel, code, run_order, args.quantity, base_url=base_url)
    elif mode in ("acquire", "a"):
        hold = args.hold_duration if args.hold_duration is not None else 5
        print("Mode: separate acquire and release requests")
        run_parallel(args.start_id, args.parallel, args.lock_name or "test_lock", run_acquire, hold, base_url=base_url)
    else:
        print(f"Unknown mode: {mode}")
        return 1
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="namedlock")
    parser.add_argument("--config", help="Path to JSON config file (default: config.json)")
    sub = parser.add_subparsers(dest="cmd")

    p_serve = sub.add_parser("serve", help="Run the HTTP lock server")
    p_serve.add_argument("--host", help="Override config: bind address")
    p_serve.add_argument("--port", type=int, help="Override config: port")
    p_serve.set_defaults(func=serve)

    p_init = sub.add_parser("init-db", help="Create the database tables")
    p_init.set_defaults(func=init_database)

    p_hist = sub.add_parser("history", help="Show the lock history of a lock name")
    p_hist.add_argument("lock_name")
    p_hist.add_argument("--limit", type=int, default=50)
    p_hist.set_defaults(func=history)

    p_clients = sub.add_parser("clients", help="Run concurrent test clients against a server")
    p_clients.add_argument("mode", choices=["hold", "h", "process", "p", "order", "o", "acquire", "a"])
    p_clients.add_argument("--start-id", type=int, default=1, help="ID of the first client")
    p_clients.add_argument("--parallel", type=int, default=1, help="Number of concurrent clients")
    p_clients.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p_clients.add_argument("--lock-name", help="Lock name for hold/acquire modes (default: test_lock)")
    p_clients.add_argument("--hold-duration", type=float, help="Seconds to hold the lock (default: 5)")
    p_clients.add_argument("--product-code", help="Product code for process/order modes")
    p_clients.add_argument("--quantity", type=int, default=1)
    p_clients.set_defaults(func=clients)

    args = parser.parse_args(argv)
    if hasattr(args, "func"):
        try:
            return args.func(args)
        except ConfigurationError as exc:
            print(f"ERROR: {exc}")
            return 2
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
