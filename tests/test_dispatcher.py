"""Unit tests for CertificateController and InFlightTracker.

Watch streams are replaced by a fake watch so the loops can be driven
synchronously.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import MagicMock

from kubernetes import client

from letsencrypt_certificate.cli import (
    ANNOTATION_CERTIFICATE,
    ANNOTATION_HOSTNAMES,
    CertificateBundle,
    CertificateController,
    CertificateProvider,
    CertificateReconciler,
    InFlightTracker,
    LetsEncryptAccount,
    ReconcileResult,
    ReconcileStatus,
    load_account,
)

STARTED = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

# =============================================================================
# Fake Watch
# =============================================================================


class FakeWatch:
    """Watch replacement yielding a fixed list of events."""

    def __init__(self, events: List[Dict[str, Any]]):
        self.events = events
        self.stream_calls: List[Dict[str, Any]] = []
        self.stopped = False

    def stream(self, func, **kwargs):
        self.stream_calls.append({"func": func, **kwargs})
        yield from self.events

    def stop(self) -> None:
        self.stopped = True


def _secret(name: str) -> client.V1Secret:
    return client.V1Secret(metadata=client.V1ObjectMeta(name=name, namespace="default"))


def _namespace(name: str, created: datetime) -> client.V1Namespace:
    return client.V1Namespace(metadata=client.V1ObjectMeta(name=name, creation_timestamp=created))


def _controller(core_api, reconciler=None, replicator=None, events=None) -> CertificateController:
    reconciler = reconciler or MagicMock()
    reconciler.reconcile_secret.return_value = ReconcileResult(ReconcileStatus.SKIPPED)
    fake_watch = FakeWatch(events or [])
    controller = CertificateController(
        core_api=core_api,
        reconciler=reconciler,
        replicator=replicator or MagicMock(),
        watch_timeout=60,
        watch_factory=lambda: fake_watch,
        now_fn=lambda: STARTED,
    )
    controller.fake_watch = fake_watch
    return controller


# =============================================================================
# Secret Watch Tests
# =============================================================================


class TestWatchSecrets:
    """Tests for dispatching secret watch events."""

    def test_added_and_modified_are_dispatched(self, core_api) -> None:
        """ADDED and MODIFIED events are reconciled with their initiator; DELETED is ignored."""
        events = [
            {"type": "ADDED", "object": _secret("a")},
            {"type": "MODIFIED", "object": _secret("b")},
            {"type": "DELETED", "object": _secret("c")},
        ]
        controller = _controller(core_api, events=events)

        controller.watch_secrets_once()

        calls = [
            (c.args[0].metadata.name, c.args[1])
            for c in controller.reconciler.reconcile_secret.call_args_list
        ]
        assert calls == [("a", "watcher:ADDED"), ("b", "watcher:MODIFIED")]

    def test_watch_uses_timeout(self, core_api) -> None:
        """The watch lists secrets across namespaces with the configured timeout."""
        controller = _controller(core_api)

        controller.watch_secrets_once()

        call = controller.fake_watch.stream_calls[0]
        assert call["func"] == core_api.list_secret_for_all_namespaces
        assert call["timeout_seconds"] == 60

    def test_stop_ends_dispatching(self, core_api) -> None:
        """No events are dispatched once stopping."""
        controller = _controller(core_api, events=[{"type": "ADDED", "object": _secret("a")}])
        controller.stop_event.set()

        controller.watch_secrets_once()

        controller.reconciler.reconcile_secret.assert_not_called()


# =============================================================================
# Poll Tests
# =============================================================================


def test_poll_dispatches_every_secret(core_api) -> None:
    """Polling reconciles all secrets in all namespaces."""
    core_api.add_secret("default", "a")
    core_api.add_secret("team-a", "b")
    controller = _controller(core_api)

    controller.poll_once()

    dispatched = [
        (c.args[0].metadata.namespace, c.args[0].metadata.name, c.args[1])
        for c in controller.reconciler.reconcile_secret.call_args_list
    ]
    assert sorted(dispatched) == [("default", "a", "poller"), ("team-a", "b", "poller")]


class FlakyCertificateProvider(CertificateProvider):
    """Provider failing with a non-certificate error for one hostname."""

    def __init__(self, failing_hostname: str):
        self.failing_hostname = failing_hostname
        self.calls: List[List[str]] = []

    @property
    def name(self) -> str:
        return "Flaky"

    def obtain_certificate(self, hostnames, account) -> CertificateBundle:
        self.calls.append(list(hostnames))
        if self.failing_hostname in hostnames:
            raise RuntimeError("connection pool is closed")
        return CertificateBundle(certificate=b"cert", private_key=b"key", domain=hostnames[0])


def _enabled(hostnames: str) -> Dict[str, str]:
    return {ANNOTATION_CERTIFICATE: "true", ANNOTATION_HOSTNAMES: hostnames}


class TestPollIsolation:
    """A failing secret never stops the pass for the other secrets."""

    def test_unexpected_error_does_not_abort_pass(self, core_api) -> None:
        """The second secret is processed after the first one fails unexpectedly."""
        core_api.add_secret("default", "bad-cert", _enabled("bad.example.com"))
        core_api.add_secret("default", "good-cert", _enabled("good.example.com"))
        provider = FlakyCertificateProvider("bad.example.com")
        reconciler = CertificateReconciler(
            core_api=core_api,
            certificate_provider=provider,
            cloudflare=MagicMock(),
            account_loader=lambda: LetsEncryptAccount(email="admin@example.com", key=None),
            now_fn=lambda: STARTED,
        )
        controller = CertificateController(
            core_api=core_api, reconciler=reconciler, now_fn=lambda: STARTED
        )

        controller.poll_once()

        assert provider.calls == [["bad.example.com"], ["good.example.com"]]
        assert "ssl.crt" in core_api.stored("default", "good-cert").data
        assert set(core_api.events) == {
            ("default", "bad-cert-failed"),
            ("default", "good-cert-succeeded"),
        }

    def test_malformed_account_fails_every_secret(self, core_api, tmp_path: Path) -> None:
        """A broken account file fails each secret with its own event."""
        account_json = tmp_path / "account.json"
        account_json.write_text(json.dumps({"email": "admin@example.com", "registration": "bad"}))
        core_api.add_secret("default", "a-cert", _enabled("a.example.com"))
        core_api.add_secret("default", "b-cert", _enabled("b.example.com"))
        reconciler = CertificateReconciler(
            core_api=core_api,
            certificate_provider=FlakyCertificateProvider("never.example.com"),
            cloudflare=MagicMock(),
            account_loader=lambda: load_account(str(account_json), str(tmp_path / "account.key")),
            now_fn=lambda: STARTED,
        )
        controller = CertificateController(
            core_api=core_api, reconciler=reconciler, now_fn=lambda: STARTED
        )

        controller.poll_once()

        for name in ("a-cert", "b-cert"):
            event = core_api.events[("default", f"{name}-failed")]
            assert event.reason == "CredentialLoadFailed"


# =============================================================================
# Namespace Watch Tests
# =============================================================================


class TestWatchNamespaces:
    """Tests for seeding namespaces created while running."""

    def test_new_namespace_is_seeded(self, core_api) -> None:
        """Namespaces created after startup are seeded."""
        namespace = _namespace("team-b", STARTED + timedelta(minutes=1))
        controller = _controller(core_api, events=[{"type": "ADDED", "object": namespace}])

        controller.watch_namespaces_once()

        controller.replicator.replicate_on_namespace_created.assert_called_once_with(namespace)

    def test_existing_namespaces_are_ignored(self, core_api) -> None:
        """The initial ADDED burst for existing namespaces is ignored."""
        events = [
            {"type": "ADDED", "object": _namespace("default", STARTED - timedelta(days=30))},
            {"type": "MODIFIED", "object": _namespace("team-b", STARTED + timedelta(minutes=1))},
        ]
        controller = _controller(core_api, events=events)

        controller.watch_namespaces_once()

        controller.replicator.replicate_on_namespace_created.assert_not_called()


# =============================================================================
# Shutdown Tests
# =============================================================================


class TestShutdown:
    """Tests for graceful shutdown."""

    def test_stop_stops_open_watches(self, core_api) -> None:
        """Stopping stops watches that are currently streaming."""
        controller = _controller(core_api, events=[{"type": "ADDED", "object": _secret("a")}])
        idle_during_reconcile = []

        def reconcile(secret, initiator):
            idle_during_reconcile.append(controller.stop(timeout=0))
            return ReconcileResult(ReconcileStatus.SKIPPED)

        controller.reconciler.reconcile_secret.side_effect = reconcile

        controller.watch_secrets_once()

        assert controller.fake_watch.stopped is True
        assert idle_during_reconcile == [False]
        assert controller.stop(timeout=1) is True

    def test_dispatch_after_stop_is_refused(self, core_api) -> None:
        """Work arriving after stop is not started."""
        controller = _controller(core_api)
        controller.stop(timeout=1)

        assert controller.dispatch(_secret("a"), "poller") is None
        controller.reconciler.reconcile_secret.assert_not_called()

    def test_stop_waits_for_in_flight(self, core_api) -> None:
        """stop() returns only after in-flight reconciliations finished."""
        started = threading.Event()
        release = threading.Event()
        controller = _controller(core_api)

        def slow_reconcile(secret, initiator):
            started.set()
            release.wait(5)
            return ReconcileResult(ReconcileStatus.SUCCEEDED)

        controller.reconciler.reconcile_secret.side_effect = slow_reconcile
        worker = threading.Thread(target=controller.dispatch, args=(_secret("a"), "poller"))
        worker.start()
        assert started.wait(5)

        assert controller.stop(timeout=0.1) is False
        release.set()
        worker.join(5)
        assert controller.stop(timeout=1) is True


# =============================================================================
# In-Flight Tracker Tests
# =============================================================================


class TestInFlightTracker:
    """Tests for InFlightTracker."""

    def test_counts_tracked_work(self) -> None:
        """The count reflects work inside track()."""
        tracker = InFlightTracker()
        with tracker.track() as started:
            assert started is True
            assert tracker.count == 1
        assert tracker.count == 0

    def test_closed_tracker_refuses(self) -> None:
        """After close_and_wait no new work starts."""
        tracker = InFlightTracker()
        assert tracker.close_and_wait(timeout=1) is True
        with tracker.track() as started:
            assert started is False
            assert tracker.count == 0
