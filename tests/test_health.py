def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "OK"
    assert body["uptime"] >= 0


def test_readiness_checks_database_and_queue(client):
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["checks"] == {"database": True, "queue": True}


def test_metrics_include_queue_counts(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    body = r.json()
    assert "counters" in body
    assert body["queue"]["waiting"] == 0


def test_correlation_id_is_echoed(client):
    r = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
    assert r.headers["X-Correlation-ID"] == "abc-123"
    assert client.get("/health").headers["X-Correlation-ID"]
