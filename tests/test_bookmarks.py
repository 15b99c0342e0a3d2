"""Tests for /api/bookmarks: toggle, add/remove, notes and listing."""
import pytest


def _save_search(client, grant="quantum"):
    resp = client.post("/api/history", json={"searchTerms": {"grant": grant}})
    assert resp.status_code == 200
    return resp.json()["search_id"]


class TestAuthRequired:
    @pytest.mark.parametrize("method,url", [
        ("GET", "/api/bookmarks"),
        ("GET", "/api/bookmarks/grant/1"),
        ("POST", "/api/bookmarks/grant/1/toggle"),
        ("PUT", "/api/bookmarks/grant/1"),
        ("DELETE", "/api/bookmarks/grant/1"),
    ])
    def test_anonymous_rejected(self, client, method, url):
        resp = client.request(method, url)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authentication required"


class TestToggle:
    def test_toggle_twice_restores_state(self, alice):
        first = alice.post("/api/bookmarks/grant/1/toggle").json()
        assert first == {"success": True, "isBookmarked": True}
        second = alice.post("/api/bookmarks/grant/1/toggle").json()
        assert second == {"success": True, "isBookmarked": False}

    def test_state_visible_on_grant(self, alice):
        alice.post("/api/bookmarks/grant/2/toggle")
        assert alice.get("/api/grants/2").json()["is_bookmarked"] is True
        search = alice.post("/api/grants", json={}).json()
        flags = {g["grant_id"]: g["is_bookmarked"] for g in search["data"]}
        assert flags[2] is True
        assert flags[1] is False

    def test_recipient_and_institute(self, alice):
        assert alice.post("/api/bookmarks/recipient/1/toggle").json()["isBookmarked"]
        assert alice.post("/api/bookmarks/institute/2/toggle").json()["isBookmarked"]
        assert alice.get("/api/recipients/1").json()["is_bookmarked"] is True
        assert alice.get("/api/institutes/2").json()["is_bookmarked"] is True

    def test_missing_entity(self, alice):
        resp = alice.post("/api/bookmarks/grant/999/toggle")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Grant 999 not found"

    def test_unknown_type(self, alice):
        assert alice.post("/api/bookmarks/widget/1/toggle").status_code == 404

    def test_bookmarks_are_per_user(self, alice, bob):
        alice.post("/api/bookmarks/grant/1/toggle")
        assert bob.get("/api/bookmarks/grant/1").json()["isBookmarked"] is False
        assert bob.post("/api/bookmarks/grant/1/toggle").json()["isBookmarked"] is True
        assert alice.get("/api/bookmarks/grant/1").json()["isBookmarked"] is True


class TestAddRemove:
    def test_put_is_idempotent(self, alice, db):
        assert alice.put("/api/bookmarks/grant/1").json()["isBookmarked"] is True
        assert alice.put("/api/bookmarks/grant/1").json()["isBookmarked"] is True
        count = db.execute("SELECT COUNT(*) FROM bookmarked_grants").fetchone()[0]
        assert count == 1

    def test_delete_is_idempotent(self, alice):
        alice.put("/api/bookmarks/grant/1")
        assert alice.delete("/api/bookmarks/grant/1").json()["isBookmarked"] is False
        assert alice.delete("/api/bookmarks/grant/1").status_code == 200
        assert alice.get("/api/bookmarks/grant/1").json()["isBookmarked"] is False

    @pytest.mark.parametrize("method", ["get", "delete"])
    def test_missing_entity(self, alice, method):
        resp = getattr(alice, method)("/api/bookmarks/grant/99999")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Grant 99999 not found"

    def test_missing_recipient_status(self, alice):
        assert alice.get("/api/bookmarks/recipient/99999").status_code == 404

    def test_status_includes_note(self, alice):
        alice.put("/api/bookmarks/grant/1")
        alice.patch("/api/bookmarks/grant/1/note", json={"note": "check renewal"})
        status = alice.get("/api/bookmarks/grant/1").json()
        assert status["isBookmarked"] is True
        assert status["notes"] == "check renewal"
        assert status["bookmarked_at"]


class TestNotes:
    def test_note_requires_bookmark(self, alice):
        resp = alice.patch("/api/bookmarks/grant/1/note", json={"note": "hi"})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Bookmark not found"

    def test_note_trimmed(self, alice):
        alice.put("/api/bookmarks/recipient/1")
        resp = alice.patch("/api/bookmarks/recipient/1/note", json={"note": "  ask about lab  "})
        assert resp.json() == {"success": True, "notes": "ask about lab"}

    def test_blank_note_clears(self, alice):
        alice.put("/api/bookmarks/grant/1")
        alice.patch("/api/bookmarks/grant/1/note", json={"note": "x"})
        resp = alice.patch("/api/bookmarks/grant/1/note", json={"note": "   "})
        assert resp.json()["notes"] is None

    def test_note_too_long(self, alice):
        alice.put("/api/bookmarks/grant/1")
        resp = alice.patch("/api/bookmarks/grant/1/note", json={"note": "x" * 2001})
        assert resp.status_code == 400


class TestSearchBookmarks:
    def test_bookmark_own_search(self, alice):
        search_id = _save_search(alice)
        resp = alice.post(f"/api/bookmarks/search/{search_id}/toggle")
        assert resp.json()["isBookmarked"] is True
        history = alice.get("/api/history").json()["data"]
        assert history[0]["is_bookmarked"] is True

    def test_cannot_bookmark_other_users_search(self, alice, bob):
        search_id = _save_search(alice)
        resp = bob.post(f"/api/bookmarks/search/{search_id}/toggle")
        assert resp.status_code == 404

    def test_deleting_search_drops_bookmark(self, alice):
        search_id = _save_search(alice)
        alice.put(f"/api/bookmarks/search/{search_id}")
        alice.delete(f"/api/history/{search_id}")
        assert alice.get("/api/bookmarks").json()["searches"] == []


class TestListing:
    def test_empty(self, alice):
        assert alice.get("/api/bookmarks").json() == {
            "grants": [], "recipients": [], "institutes": [], "searches": [],
        }

    def test_all_types(self, alice):
        alice.put("/api/bookmarks/grant/2")
        alice.put("/api/bookmarks/recipient/1")
        alice.put("/api/bookmarks/institute/3")
        search_id = _save_search(alice, grant="cancer")
        alice.put(f"/api/bookmarks/search/{search_id}")
        alice.patch("/api/bookmarks/grant/2/note", json={"note": "renewal due"})

        saved = alice.get("/api/bookmarks").json()
        assert [g["ref_number"] for g in saved["grants"]] == ["R-002"]
        assert saved["grants"][0]["notes"] == "renewal due"
        assert len(saved["grants"][0]["amendments"]) == 3
        assert saved["recipients"][0]["legal_name"] == "Jane Smith"
        assert saved["recipients"][0]["recipient_type_label"] == "Academia"
        assert saved["recipients"][0]["total_funding"] == 150000.0
        assert saved["institutes"][0]["name"] == "University of British Columbia"
        assert saved["searches"][0]["search_terms"]["grant"] == "cancer"

    def test_sort_grants_by_value(self, alice):
        for grant_id in (1, 4, 3):
            alice.put(f"/api/bookmarks/grant/{grant_id}")
        saved = alice.get(
            "/api/bookmarks", params={"sort": "agreement_value", "dir": "asc"}
        ).json()
        assert [g["ref_number"] for g in saved["grants"]] == ["R-003", "R-001", "R-004"]

    def test_default_sort_newest_bookmark_first(self, alice):
        for grant_id in (1, 4, 3):
            alice.put(f"/api/bookmarks/grant/{grant_id}")
        saved = alice.get("/api/bookmarks").json()
        assert [g["ref_number"] for g in saved["grants"]] == ["R-003", "R-004", "R-001"]

    def test_only_own_bookmarks_listed(self, alice, bob):
        alice.put("/api/bookmarks/grant/1")
        assert bob.get("/api/bookmarks").json()["grants"] == []
