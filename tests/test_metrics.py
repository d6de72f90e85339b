from dreamdiary.controllers import analysis as analysis_controller

from tests.utils.accounts import bearer, make_account


def test_quota_rejections_exposed(client):
    account_id = make_account(analysis_count=20)
    resp = client.post("/v1/analysis", json={"content": "dream"}, headers=bearer(account_id))
    assert resp.status_code == 402
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert 'quota_reject_total{action="SINGLE_ANALYSIS",reason="QUOTA_EXCEEDED"}' in body


def test_gpt_timeout_metric(client, monkeypatch):
    def _slow(content):
        raise TimeoutError("slow")

    monkeypatch.setattr(analysis_controller, "analyze_dream", _slow)
    account_id = make_account()
    resp = client.post("/v1/analysis", json={"content": "dream"}, headers=bearer(account_id))
    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "GPT_TIMEOUT"
    body = client.get("/metrics").text
    assert "gpt_timeout_total" in body
    assert 'analysis_fail_total{action="SINGLE_ANALYSIS"}' in body
