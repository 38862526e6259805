"""Security and health tests.

Tests:
- Security headers are present on JSON responses
- JSON error bodies for unknown routes
- Billing health check reports presence only, never values
"""


class TestSecurityHeaders:
    """Verify security headers are present on responses."""

    def test_headers_on_api_response(self, client):
        resp = client.get("/api/health/billing")
        assert resp.headers.get("X-Content-Type-Options") == "nosniff"
        assert resp.headers.get("X-Frame-Options") == "DENY"
        assert resp.headers.get("Referrer-Policy") == "strict-origin-when-cross-origin"
        assert "frame-ancestors 'none'" in resp.headers.get("Content-Security-Policy")
        assert resp.headers.get("Cache-Control") == "no-store"

    def test_permissions_policy(self, client):
        pp = client.get("/auth/csrf-token").headers.get("Permissions-Policy")
        assert "camera=()" in pp
        assert "payment=(self)" in pp

    def test_hsts_not_set_in_debug(self, client):
        resp = client.get("/api/health/billing")
        assert "Strict-Transport-Security" not in resp.headers

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/does-not-exist")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Not found"}


class TestBillingHealth:

    def test_configured_app_is_healthy(self, client):
        resp = client.get("/api/health/billing")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["ok"] is True
        assert data["checks"]["STRIPE_SECRET_KEY"] is True
        assert data["checks"]["MAIL_USERNAME"] is False

    def test_missing_critical_setting_is_unhealthy(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_WEBHOOK_SECRET", None)
        resp = client.get("/api/health/billing")
        assert resp.status_code == 500
        assert resp.get_json()["checks"]["STRIPE_WEBHOOK_SECRET"] is False

    def test_missing_optional_setting_stays_healthy(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "CRON_SECRET", None)
        assert client.get("/api/health/billing").status_code == 200

    def test_secret_values_never_echoed(self, client):
        body = client.get("/api/health/billing").get_data(as_text=True)
        assert "sk_test_fake" not in body
        assert "whsec_test_fake" not in body
        assert "cron-test-secret" not in body
