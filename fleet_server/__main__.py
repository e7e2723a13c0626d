from __future__ import annotations

import argparse
import json
import logging
import threading
from datetime import UTC, datetime, timedelta

import uvicorn
from alembic import command
from alembic.config import Config

from fleet_server.alerts import AlertRuleEngine, AlertScheduler
from fleet_server.app import create_app
from fleet_server.config import ServerConfig, load_config
from fleet_server.db import ServerDatabase
from fleet_server.feed import TelemetryFeedSession
from fleet_server.ingest import TelemetryIngestService
from fleet_server.logging import configure_logging
from fleet_server.push import NotificationDispatcher
from fleet_server.status import StatusRecorder
from fleet_server.tasks import AlertNotifier
from fleet_shared.enums import AlertSeverity, RuleType

logger = logging.getLogger("fleet_server.cli")


def build_alert_engine(cfg: ServerConfig, db: ServerDatabase) -> AlertRuleEngine:
    status = StatusRecorder(db)
    dispatcher = NotificationDispatcher(db, cfg.push, status)
    notifier = AlertNotifier(dispatcher, mode=cfg.push.dispatch_mode)
    return AlertRuleEngine(db, cfg.alerts, notifier=notifier, status=status)


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config()
    app = create_app(cfg)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="debug" if args.verbose else "info")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    cfg = load_config()
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", cfg.database_url)
    command.upgrade(alembic_cfg, args.revision)
    return 0


def cmd_feed(args: argparse.Namespace) -> int:
    cfg = load_config()
    db = ServerDatabase(cfg.database_url)
    status = StatusRecorder(db)
    service = TelemetryIngestService(db, status)
    session = TelemetryFeedSession(cfg.feed, service.handle_feed_message, status=status)
    if not session.start():
        logger.error("GB_MQTT_URL is not set or the feed is disabled")
        return 1
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("stopping telemetry feed")
    finally:
        session.stop()
    return 0


def cmd_alerts_worker(args: argparse.Namespace) -> int:
    cfg = load_config()
    if not cfg.alerts.worker_enabled:
        logger.error("alerts worker disabled by GB_ALERT_WORKER_ENABLED")
        return 1
    db = ServerDatabase(cfg.database_url)
    scheduler = AlertScheduler(build_alert_engine(cfg, db), cfg.alerts.interval_seconds)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("stopping alerts worker")
    return 0


def cmd_alerts_once(args: argparse.Namespace) -> int:
    cfg = load_config()
    db = ServerDatabase(cfg.database_url)
    summary = build_alert_engine(cfg, db).run_once()
    print(json.dumps({**summary.as_payload(), "error": summary.error}, ensure_ascii=True))
    return 0 if summary.error is None else 1


def cmd_seed_demo(args: argparse.Namespace) -> int:
    cfg = load_config()
    db = ServerDatabase(cfg.database_url)
    if cfg.database_url.lower().startswith("sqlite://"):
        db.init_for_tests()

    org = db.create_org(args.org_name)
    site = db.create_site(org.id, "Demo Plant Room", external_id=args.site_external_id)
    device = db.create_device(
        site.id,
        "Demo Heat Pump",
        external_id=args.device_external_id,
        min_setpoint=30.0,
        max_setpoint=60.0,
        supports_heating=True,
        supports_cooling=False,
        supports_auto=True,
    )
    user = db.create_user(org.id, args.owner_email, role="owner", name="Demo Owner")
    if args.push_token:
        db.add_push_token(user.id, args.push_token, org_id=org.id, platform="ios")
    db.create_alert_rule(
        org.id,
        metric="cop",
        rule_type=RuleType.THRESHOLD_BELOW,
        severity=AlertSeverity.HIGH,
        device_id=device.id,
        name="Low COP",
        threshold=2.0,
    )

    now = datetime.now(UTC)
    for minutes_ago, supply in ((20, 45.0), (10, 47.5), (0, 49.0)):
        observed_at = now - timedelta(minutes=minutes_ago)
        metrics = [("supply_temp", supply), ("return_temp", supply - 5.0), ("power_kw", 3.2), ("cop", 3.4)]
        db.write_telemetry(
            device.id,
            observed_at,
            metrics,
            {"metrics": dict(metrics), "raw": {"timestamp": observed_at.isoformat()}},
        )

    output = {
        "org_id": org.id,
        "site_id": site.id,
        "site_external_id": site.external_id,
        "device_id": device.id,
        "device_external_id": device.external_id,
        "user_id": user.id,
    }
    print(json.dumps(output, ensure_ascii=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet_server")
    parser.add_argument("--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="run the FastAPI server")
    run_parser.set_defaults(func=cmd_run)

    migrate_parser = subparsers.add_parser("migrate", help="run Alembic migration")
    migrate_parser.add_argument("--revision", default="head")
    migrate_parser.set_defaults(func=cmd_migrate)

    feed_parser = subparsers.add_parser("feed", help="subscribe to the MQTT telemetry feed")
    feed_parser.set_defaults(func=cmd_feed)

    worker_parser = subparsers.add_parser("alerts-worker", help="run the alert rule engine on its interval")
    worker_parser.set_defaults(func=cmd_alerts_worker)

    once_parser = subparsers.add_parser("alerts-once", help="run a single alert evaluation cycle")
    once_parser.set_defaults(func=cmd_alerts_once)

    seed_parser = subparsers.add_parser("seed-demo", help="create a demo org, site, heat pump and telemetry")
    seed_parser.add_argument("--org-name", default="Demo Facilities")
    seed_parser.add_argument("--site-external-id", default="demo-site")
    seed_parser.add_argument("--device-external-id", default="demo-hp-1")
    seed_parser.add_argument("--owner-email", default="owner@demo.greenbro.local")
    seed_parser.add_argument("--push-token", default=None)
    seed_parser.set_defaults(func=cmd_seed_demo)

    parser.set_defaults(func=cmd_run)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=bool(args.verbose))
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
