"""Tests for /api/history: saving, listing, deleting and popular searches."""
from api.routes.history import decode_search_row


def _save(client, **body):
    resp = client.post("/api/history", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestSave:
    def test_anonymous_save(self, client, db):
        result = _save(client, searchTerms={"grant": " quantum "}, resultCount=2)
        assert result["saved"] is True
        row = db.execute(
            "SELECT user_id, search_query, result_count FROM search_history "
            "WHERE search_id = ?", (result["search_id"],)
        ).fetchone()
        assert row["user_id"] is None
        assert '"grant": "quantum"' in row["search_query"]
        assert row["result_count"] == 2

    def test_empty_search_not_saved(self, client, db):
        result = _save(client, searchTerms={"grant": "   "})
        assert result == {"saved": False, "search_id": None}
        assert db.execute("SELECT COUNT(*) FROM search_history").fetchone()[0] == 0

    def test_filters_alone_are_saved(self, client):
        assert _save(client, filters={"agencies": ["NSERC"]})["saved"] is True

    def test_ceiling_max_value_is_not_a_filter(self, client):
        result = _save(client, filters={"valueRange": {"min": 0, "max": 200_000_000}})
        assert result["saved"] is False

    def test_signed_in_save_has_owner(self, alice, db):
        result = _save(alice, searchTerms={"recipient": "jane"})
        owner = db.execute(
            "SELECT u.email FROM search_history sh JOIN users u ON u.id = sh.user_id "
            "WHERE sh.search_id = ?", (result["search_id"],)
        ).fetchone()
        assert owner["email"] == "alice@example.com"


class TestList:
    def test_requires_login(self, client):
        assert client.get("/api/history").status_code == 401

    def test_newest_first_with_decoded_json(self, alice):
        _save(alice, searchTerms={"grant": "quantum"})
        _save(alice, searchTerms={"recipient": "jane"},
              filters={"dateRange": {"from": "2020-01-01"}})
        body = alice.get("/api/history").json()
        assert body["pagination"]["total"] == 2
        newest = body["data"][0]
        assert newest["search_terms"] == {"recipient": "jane", "institute": "", "grant": ""}
        assert newest["filters"]["dateRange"]["from"] == "2020-01-01"
        assert newest["is_bookmarked"] is False
        assert body["data"][1]["search_terms"]["grant"] == "quantum"

    def test_fifteen_per_page(self, alice):
        for i in range(16):
            _save(alice, searchTerms={"grant": f"term {i}"})
        first = alice.get("/api/history").json()
        assert len(first["data"]) == 15
        assert first["pagination"]["totalPages"] == 2
        second = alice.get("/api/history", params={"page": 2}).json()
        assert [r["search_terms"]["grant"] for r in second["data"]] == ["term 0"]

    def test_only_own_history(self, alice, bob):
        _save(alice, searchTerms={"grant": "quantum"})
        assert bob.get("/api/history").json()["data"] == []


class TestDelete:
    def test_delete_own(self, alice):
        search_id = _save(alice, searchTerms={"grant": "quantum"})["search_id"]
        assert alice.delete(f"/api/history/{search_id}").json() == {"success": True}
        assert alice.get("/api/history").json()["data"] == []

    def test_cannot_delete_others(self, alice, bob):
        search_id = _save(alice, searchTerms={"grant": "quantum"})["search_id"]
        resp = bob.delete(f"/api/history/{search_id}")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Search not found"

    def test_delete_missing(self, alice):
        assert alice.delete("/api/history/12345").status_code == 404


class TestPopular:
    def test_counts_case_insensitively(self, client):
        for term in ("Quantum", "Quantum", "quantum ", "cancer"):
            _save(client, searchTerms={"grant": term})
        rows = client.get("/api/history/popular", params={"category": "grant"}).json()
        assert rows == [
            {"text": "Quantum", "count": 3, "category": "grant"},
            {"text": "cancer", "count": 1, "category": "grant"},
        ]

    def test_categories_are_separate(self, client):
        _save(client, searchTerms={"recipient": "jane", "grant": "quantum"})
        rows = client.get("/api/history/popular", params={"category": "recipient"}).json()
        assert [r["text"] for r in rows] == ["jane"]

    def test_limit(self, client):
        for term in ("a1", "b2", "c3"):
            _save(client, searchTerms={"institute": term})
        rows = client.get(
            "/api/history/popular", params={"category": "institute", "limit": 2}
        ).json()
        assert len(rows) == 2

    def test_new_search_invalidates_cache(self, client):
        _save(client, searchTerms={"grant": "quantum"})
        first = client.get("/api/history/popular").json()
        assert first[0]["count"] == 1
        _save(client, searchTerms={"grant": "quantum"})
        second = client.get("/api/history/popular").json()
        assert second[0]["count"] == 2

    def test_unknown_category(self, client):
        resp = client.get("/api/history/popular", params={"category": "program"})
        assert resp.status_code == 400

    def test_empty(self, client):
        assert client.get("/api/history/popular").json() == []


class TestDecodeSearchRow:
    def test_decodes(self):
        row = decode_search_row(
            {"search_id": 1, "search_query": '{"grant": "x"}', "filters": '{"agencies": []}'}
        )
        assert row["search_terms"] == {"grant": "x"}
        assert row["filters"] == {"agencies": []}
        assert "search_query" not in row

    def test_malformed(self):
        row = decode_search_row({"search_id": 1, "search_query": "{oops", "filters": None})
        assert row["search_terms"] == {}
        assert row["filters"] == {}
