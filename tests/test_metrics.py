from tests.utils.auth import build_headers


def test_chat_metrics(client, make_user, collaborators):
    user_id = make_user()
    resp = client.post(
        "/v1/chat",
        data={"message": "Wi-Fi keeps dropping"},
        headers=build_headers(user_id),
    )
    assert resp.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert 'chat_messages_total{author="user"}' in body
    assert "help_sessions_created_total" in body


def test_close_metrics(client, make_user, make_session, collaborators):
    user_id = make_user()
    session_id = make_session(user_id, completed=False, messages=(("hello", False),))
    resp = client.post(
        "/v1/closeSession",
        json={"help_session_id": session_id},
        headers=build_headers(user_id),
    )
    assert resp.status_code == 200

    body = client.get("/metrics").text
    assert "help_sessions_closed_total" in body
    assert "summary_latency_seconds_bucket" in body


def test_webhook_forbidden_metric(client):
    resp = client.post(
        "/v1/stripe/webhook",
        content=b"{}",
        headers={"Stripe-Signature": "t=1,v1=00"},
    )
    assert resp.status_code == 403
    assert "webhook_forbidden_total" in client.get("/metrics").text
