import unittest
from datetime import datetime, timedelta, timezone

from groupcal.models import (
    AppConfig,
    EventDescriptor,
    GraphConfig,
    MailboxTarget,
    RunReport,
    SyncConfig,
    SyncResult,
    parse_local_datetime,
    transaction_id_for,
)


class ModelsTests(unittest.TestCase):
    def test_graph_config_defaults_and_normalization(self) -> None:
        cfg = GraphConfig.from_dict({"tenant_id": " t ", "base_url": "https://graph.example.com/beta/"})
        self.assertEqual(cfg.tenant_id, "t")
        self.assertEqual(cfg.base_url, "https://graph.example.com/beta")
        self.assertFalse(cfg.is_complete())
        self.assertEqual(GraphConfig.from_dict({}).base_url, "https://graph.microsoft.com/v1.0")

    def test_sync_config_clamps_values(self) -> None:
        cfg = SyncConfig.from_dict({"max_workers": 0, "retry_attempts": -2, "retry_backoff_seconds": -1, "calendar_name": ""})
        self.assertEqual(cfg.max_workers, 1)
        self.assertEqual(cfg.retry_attempts, 1)
        self.assertEqual(cfg.retry_backoff_seconds, 0.0)
        self.assertEqual(cfg.calendar_name, "Calendar")
        self.assertTrue(cfg.use_transaction_id)

    def test_app_config_round_trips_through_dict(self) -> None:
        cfg = AppConfig.from_dict({"sync": {"group_id": "g1"}})
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_parse_local_datetime_drops_zone(self) -> None:
        self.assertEqual(parse_local_datetime("2023-05-19T00:00:00"), datetime(2023, 5, 19))
        self.assertEqual(parse_local_datetime("2023-05-19T00:00:00Z"), datetime(2023, 5, 19))
        self.assertEqual(
            parse_local_datetime(datetime(2023, 5, 19, tzinfo=timezone(timedelta(hours=2)))),
            datetime(2023, 5, 19),
        )
        self.assertIsNone(parse_local_datetime("  "))

    def test_descriptor_is_immutable(self) -> None:
        event = EventDescriptor.build("A", datetime(2023, 5, 19), datetime(2023, 5, 20))
        with self.assertRaises(AttributeError):
            event.subject = "B"  # type: ignore[misc]

    def test_transaction_id_is_stable_per_pair(self) -> None:
        event = EventDescriptor.build("A", datetime(2023, 5, 19), datetime(2023, 5, 20))
        same = EventDescriptor.build("A", datetime(2023, 5, 19), datetime(2023, 5, 20))
        self.assertEqual(transaction_id_for(event, MailboxTarget("u1")), transaction_id_for(same, MailboxTarget("u1")))
        self.assertNotEqual(transaction_id_for(event, MailboxTarget("u1")), transaction_id_for(event, MailboxTarget("u2")))

    def test_run_report_counts(self) -> None:
        event = EventDescriptor.build("A", datetime(2023, 5, 19), datetime(2023, 5, 20))
        report = RunReport(
            status="partial",
            message="",
            duration_ms=5,
            results=[
                SyncResult(event, MailboxTarget("u1"), "created"),
                SyncResult(event, MailboxTarget("u2"), "failed", message="boom"),
            ],
        )
        payload = report.to_dict()
        self.assertEqual(payload["counts"]["created"], 1)
        self.assertEqual(payload["counts"]["failed"], 1)
        self.assertEqual(payload["counts"]["already_exists"], 0)
        self.assertEqual(payload["results"][1]["mailbox"], "u2")
        self.assertEqual(report.failed, 1)


if __name__ == "__main__":
    unittest.main()
