import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict

from core.config import Settings, get_settings
from core.logging_setup import setup_logging
from core.models import LinkingRequest, StatsResponse
from core.queue import RequestQueue
from core.state import QueueStore
from pipeline.collaborators import HttpLinkClient, LoggingNotifier, RequestLinker
from pipeline.processor import QueueProcessor
from probers.http_probe import AvailabilityProbe

log = logging.getLogger("linkqueue")


def _print(obj):
    print(json.dumps(obj, indent=2, default=str))


def _queue(settings: Settings) -> RequestQueue:
    return RequestQueue(QueueStore(settings.queue_file))


def _link_client(settings: Settings):
    if not settings.link_api_url or not settings.link_api_secret:
        return None
    return HttpLinkClient(settings.link_api_url, settings.link_api_secret, timeout_s=settings.link_timeout_s)


def _processor(settings: Settings, queue: RequestQueue) -> QueueProcessor:
    client = _link_client(settings)
    if client is None:
        raise ValueError("LOSTCRMANAGER_API_URL and LOSTCRMANAGER_API_SECRET are required to process the queue")
    return QueueProcessor(
        queue,
        AvailabilityProbe(settings.health_check_url, timeout_s=settings.health_check_timeout_s),
        RequestLinker(client),
        LoggingNotifier(),
        interval_s=settings.check_interval_s,
        item_delay_s=settings.item_delay_s,
        max_retries=settings.max_retries,
        shutdown_grace_s=settings.shutdown_grace_s,
    )


def cmd_serve(args, settings: Settings) -> int:
    errors = settings.validate_for_serve()
    if errors:
        for err in errors:
            log.error("config error: %s", err)
        return 1

    queue = _queue(settings)
    log.info("queue file %s, %d pending requests, consumer=%s", settings.queue_file, queue.size(), settings.consumer)

    if settings.consumer == "api":
        import uvicorn

        from api.server import create_app

        app = create_app(
            queue,
            settings.api_secret,
            max_retries=settings.max_retries,
            notifier=LoggingNotifier(),
            link_client=_link_client(settings),
        )
        uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
        return 0

    processor = _processor(settings, queue)
    stopped = threading.Event()

    def _on_signal(sig, frame):
        log.info("received signal %s", sig)
        stopped.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    processor.start()
    stopped.wait()
    processor.stop()
    return 0


def cmd_list(args, settings: Settings) -> int:
    _print([r.to_record() for r in _queue(settings).list_all()])
    return 0


def cmd_stats(args, settings: Settings) -> int:
    stats = StatsResponse.from_requests(_queue(settings).list_all())
    _print(stats.model_dump(by_alias=True, exclude_none=True))
    return 0


def cmd_clear(args, settings: Settings) -> int:
    queue = _queue(settings)
    removed = queue.size()
    queue.clear()
    _print({"cleared": removed})
    return 0


def cmd_enqueue(args, settings: Settings) -> int:
    queue = _queue(settings)
    request = LinkingRequest.create(
        channel_id=args.channel,
        message_id=args.message,
        subject_id=args.user,
        subject_label=args.label or args.user,
        guild_id=args.guild,
        image_urls=args.image or [],
    )
    queue.enqueue(request)
    _print({"request": request.to_record(), "position": queue.position(request.id)})
    return 0


def cmd_process_once(args, settings: Settings) -> int:
    try:
        processor = _processor(settings, _queue(settings))
    except ValueError as e:
        log.error("config error: %s", e)
        return 1
    report = processor.run_cycle()
    _print(asdict(report))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Durable queue for Discord account-linking requests")
    sub = parser.add_subparsers()

    p_serve = sub.add_parser("serve", help="Run the queue API or the in-process processor (QUEUE_CONSUMER)")
    p_serve.set_defaults(func=cmd_serve)

    p_list = sub.add_parser("list", help="Print all queued requests")
    p_list.set_defaults(func=cmd_list)

    p_stats = sub.add_parser("stats", help="Queue size and age")
    p_stats.set_defaults(func=cmd_stats)

    p_clear = sub.add_parser("clear", help="Drop every queued request")
    p_clear.set_defaults(func=cmd_clear)

    p_enq = sub.add_parser("enqueue", help="Queue a linking request by hand")
    p_enq.add_argument("--channel", required=True, help="channel id of the source message")
    p_enq.add_argument("--message", required=True, help="source message id")
    p_enq.add_argument("--user", required=True, help="discord user id to link")
    p_enq.add_argument("--label", help="display name for logs")
    p_enq.add_argument("--guild", help="guild id")
    p_enq.add_argument("--image", action="append", help="screenshot url (repeatable)")
    p_enq.set_defaults(func=cmd_enqueue)

    p_once = sub.add_parser("process-once", help="Run a single processor cycle")
    p_once.set_defaults(func=cmd_process_once)

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    try:
        settings = get_settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    setup_logging(settings.log_level, settings.log_file)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
