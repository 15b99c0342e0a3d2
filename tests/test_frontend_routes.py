"""Tests for the server-rendered HTML pages."""


def _html(resp):
    assert resp.headers["content-type"].startswith("text/html")
    return resp.text


class TestSearchPage:
    def test_lists_all_grants(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        text = _html(resp)
        assert "6 grants" in text
        assert "Quantum computing hardware" in text

    def test_keyword_filter(self, client):
        text = _html(client.get("/", params={"grant": "quantum"}))
        assert "2 grants" in text
        assert "Cancer immunotherapy trial" not in text

    def test_agency_checkbox(self, client):
        text = _html(client.get("/", params=[("agency", "NSERC"), ("agency", "SSHRC")]))
        assert "4 grants" in text

    def test_invalid_date_shows_error(self, client):
        resp = client.get("/", params={"from": "not-a-date"})
        assert resp.status_code == 200
        text = _html(resp)
        assert 'role="alert"' in text
        assert "filters.dateRange.from" in text
        assert "6 grants" in text

    def test_no_results(self, client):
        text = _html(client.get("/", params={"recipient": "nobody at all"}))
        assert "No grants match these criteria." in text


class TestDetailPages:
    def test_grant(self, client):
        text = _html(client.get("/grants/2"))
        assert "Cancer immunotherapy trial" in text
        assert "R-002" in text
        assert "+$50,000 (+25.0%)" in text

    def test_missing_grant(self, client):
        resp = client.get("/grants/999")
        assert resp.status_code == 404
        assert "Grant 999 not found" in _html(resp)

    def test_recipient(self, client):
        resp = client.get("/recipients/1")
        assert resp.status_code == 200
        text = _html(resp)
        assert "Jane Smith" in text
        assert "Indigenous language revitalization" in text

    def test_institute(self, client):
        text = _html(client.get("/institutes/2"))
        assert "McGill University" in text
        assert "Pilot study on sleep" in text

    def test_missing_institute(self, client):
        assert client.get("/institutes/77").status_code == 404


class TestAccountPages:
    def test_bookmarks_redirects_anonymous(self, client):
        resp = client.get("/bookmarks", follow_redirects=False)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login?next=/bookmarks"

    def test_bookmarks_signed_in(self, alice):
        alice.put("/api/bookmarks/grant/4")
        resp = alice.get("/bookmarks")
        assert resp.status_code == 200
        assert "Quantum computing hardware" in _html(resp)

    def test_login_page(self, client):
        text = _html(client.get("/login"))
        assert "Sign in" in text

    def test_reset_password_page(self, client):
        text = _html(client.get("/reset-password", params={"token": "abc123"}))
        assert "Choose a new password" in text
        assert "abc123" in text
