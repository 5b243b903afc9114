"""
End-to-end lifecycle scenarios through the HTTP API.

CRITICAL: These tests verify that:
1. An expired client_credentials token is renewed before the next
   authenticated call, and the call carries the new token
2. A forged state never reaches the token endpoint and leaves no trace
   on the record beyond one failure audit entry
"""

INSTANCE = "https://acme.service-now.com"
BASE = "/api/integrations/servicenow"


class TestClientCredentialsLifecycle:

    def test_save_token_connect_expire_refresh(self, client, provider_api, clock):
        saved = client.post(f"{BASE}/save", json={
            "instance": INSTANCE,
            "clientId": "abc",
            "clientSecret": "s3cret",
            "grantType": "client_credentials",
        })
        assert saved.json()["status"] == "saved"

        provider_api.queue_token(json={"access_token": "tok1", "expires_in": 1800})
        assert client.post(f"{BASE}/token").status_code == 200
        assert client.post(f"{BASE}/connect").json()["connected"] is True

        state = client.get(f"{BASE}/state").json()
        assert state["status"] == "connected"
        assert state["hasTokens"] is True
        assert state["tokenExpired"] is False

        assert client.post(f"{BASE}/test").status_code == 200
        assert provider_api.api_requests[-1].headers["Authorization"] == "Bearer tok1"

        clock.advance(1801)
        assert client.get(f"{BASE}/state").json()["tokenExpired"] is True

        provider_api.queue_token(json={"access_token": "tok2", "expires_in": 1800})
        tested = client.post(f"{BASE}/test")

        assert tested.status_code == 200
        assert len(provider_api.token_requests) == 2
        assert provider_api.token_requests[1]["grant_type"] == "client_credentials"
        assert provider_api.api_requests[-1].headers["Authorization"] == "Bearer tok2"

        state = client.get(f"{BASE}/state").json()
        assert state["status"] == "connected"
        assert state["tokenExpired"] is False

        actions = [e["action"] for e in client.get(f"{BASE}/logs", params={"limit": 50}).json()["logs"]]
        assert actions.count("token.acquired") == 2
        assert "integration.connected" in actions
        assert actions.count("connection.test.succeeded") == 2


class TestCsrfRejection:

    def test_forged_state_rejected(self, client, provider_api):
        client.post(f"{BASE}/save", json={
            "instance": INSTANCE,
            "clientId": "abc",
            "clientSecret": "s3cret",
            "grantType": "authorization_code",
        })
        store = client.app.state.integrations.store
        store.save_oauth_state("servicenow", "right", None)
        before = store.get_credential("servicenow")

        response = client.post(f"{BASE}/exchange", json={"code": "c1", "state": "wrong"})

        assert response.status_code == 400
        assert response.json()["code"] == "CSRF_VALIDATION_FAILED"
        assert provider_api.token_requests == []

        after = store.get_credential("servicenow")
        assert after.oauth_state == "right"
        assert after.status == before.status
        assert after.access_token_encrypted is None
        assert after.updated_at == before.updated_at

        logs = client.get(f"{BASE}/logs").json()["logs"]
        failed = [e for e in logs if e["action"] == "oauth.exchange.failed"]
        assert len(failed) == 1
        assert "wrong" not in str(failed[0]["details"])
        assert "right" not in str(failed[0]["details"])
