from syncguard.models.domain.sync_domain import SyncType


def _headers(subscription, state="exists", token=None, number="1"):
    return {
        "X-Goog-Channel-ID": subscription.channel_id,
        "X-Goog-Resource-ID": subscription.resource_id,
        "X-Goog-Resource-State": state,
        "X-Goog-Channel-Token": subscription.channel_token if token is None else token,
        "X-Goog-Message-Number": number,
    }


def _subscription(client, components, key):
    return client.portal.call(components.repo.get_subscription, key)


def test_missing_headers_rejected(client):
    response = client.post("/webhooks/calendar", headers={"X-Goog-Resource-State": "exists"})

    assert response.status_code == 400


def test_invalid_message_number_rejected(client, components, connect, calendar_key):
    connect(calendar_key)
    subscription = _subscription(client, components, calendar_key)

    response = client.post("/webhooks/calendar", headers=_headers(subscription, number="abc"))

    assert response.status_code == 400


def test_unknown_channel_returns_404(client, components):
    response = client.post(
        "/webhooks/calendar",
        headers={"X-Goog-Channel-ID": "stale-channel", "X-Goog-Resource-State": "exists"},
    )

    assert response.status_code == 404
    assert components.repo.webhook_events[-1]["error_message"] == "unknown_channel"


def test_change_notification_enqueues_sync(client, components, connect, drain, calendar_key):
    connect(calendar_key)
    subscription = _subscription(client, components, calendar_key)

    response = client.post("/webhooks/calendar", headers=_headers(subscription))
    drain()

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "accepted": True,
        "sync_enqueued": True,
        "reason": "changed",
    }
    assert components.executor.calls[-1]["sync_type"] == SyncType.WEBHOOK_TRIGGERED


def test_handshake_acknowledged_without_sync(client, components, connect, calendar_key):
    connect(calendar_key)
    subscription = _subscription(client, components, calendar_key)

    response = client.post("/webhooks/calendar", headers=_headers(subscription, state="sync"))

    assert response.status_code == 200
    assert response.json()["sync_enqueued"] is False
    assert len(components.executor.calls) == 1


def test_forged_channel_token_not_accepted(client, components, connect, calendar_key):
    connect(calendar_key)
    subscription = _subscription(client, components, calendar_key)

    response = client.post("/webhooks/calendar", headers=_headers(subscription, token="forged"))

    assert response.status_code == 200
    assert response.json()["accepted"] is False
    assert response.json()["sync_enqueued"] is False


def test_handler_timeout_asks_for_redelivery(client, components, connect, calendar_key, monkeypatch):
    connect(calendar_key)
    subscription = _subscription(client, components, calendar_key)

    async def slow_notification(key, payload):
        raise TimeoutError()

    monkeypatch.setattr(components.orchestrator, "on_webhook_notification", slow_notification)

    response = client.post("/webhooks/calendar", headers=_headers(subscription))

    assert response.status_code == 503


def test_shutting_down_returns_503(client, components, connect, calendar_key):
    connect(calendar_key)
    subscription = _subscription(client, components, calendar_key)
    client.portal.call(components.orchestrator.shutdown, 0)

    response = client.post("/webhooks/calendar", headers=_headers(subscription))

    assert response.status_code == 503
