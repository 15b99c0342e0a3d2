"""Tests for the recipient and institute endpoints."""


class TestRecipientList:
    def test_default_sort_total_funding_desc(self, client):
        resp = client.get("/api/recipients")
        assert resp.status_code == 200
        body = resp.json()
        assert body["pagination"]["total"] == 4
        assert body["pagination"]["limit"] == 30
        names = [r["legal_name"] for r in body["data"]]
        assert names == ["Acme Research Inc", "John Doe", "Jane Smith", "Alice 50%_Lab"]

    def test_name_filter(self, client):
        body = client.get("/api/recipients", params={"q": "jane"}).json()
        assert [r["legal_name"] for r in body["data"]] == ["Jane Smith"]
        assert body["pagination"]["total"] == 1

    def test_name_filter_escapes_wildcards(self, client):
        body = client.get("/api/recipients", params={"q": "50%_"}).json()
        assert [r["legal_name"] for r in body["data"]] == ["Alice 50%_Lab"]

    def test_sort_by_name_asc(self, client):
        body = client.get(
            "/api/recipients", params={"sort": "legal_name", "dir": "asc"}
        ).json()
        assert [r["legal_name"] for r in body["data"]] == [
            "Acme Research Inc", "Alice 50%_Lab", "Jane Smith", "John Doe",
        ]

    def test_unknown_sort_falls_back(self, client):
        body = client.get("/api/recipients", params={"sort": "nonsense"}).json()
        assert body["data"][0]["legal_name"] == "Acme Research Inc"

    def test_bad_direction_rejected(self, client):
        assert client.get("/api/recipients", params={"dir": "sideways"}).status_code == 400

    def test_paging(self, client):
        body = client.get("/api/recipients", params={"limit": 3, "page": 2}).json()
        assert len(body["data"]) == 1
        assert body["pagination"]["totalPages"] == 2


class TestRecipientProfile:
    def test_stats(self, client):
        resp = client.get("/api/recipients/1")
        assert resp.status_code == 200
        r = resp.json()
        assert r["legal_name"] == "Jane Smith"
        assert r["grant_count"] == 2
        assert r["total_funding"] == 150000.0
        assert r["avg_funding"] == 75000.0
        assert r["first_grant_date"] == "2019-04-01"
        assert r["latest_grant_date"] == "2021-01-15"
        assert r["funding_agencies_count"] == 2
        assert r["recipient_type_label"] == "Academia"
        assert r["research_organization_name"] == "University of Toronto"
        assert r["is_bookmarked"] is False

    def test_missing(self, client):
        resp = client.get("/api/recipients/99")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Recipient 99 not found"

    def test_grants_newest_first(self, client):
        grants = client.get("/api/recipients/1/grants").json()
        assert [g["ref_number"] for g in grants] == ["R-003", "R-001"]

    def test_grants_for_missing_recipient(self, client):
        assert client.get("/api/recipients/99/grants").status_code == 404

    def test_analytics(self, client):
        resp = client.get("/api/recipients/1/analytics")
        assert resp.status_code == 200
        body = resp.json()
        assert body["funding_growth"] == {"percent_change": -50.0, "years_span": 2}
        assert body["agency_specialization"]["specialization"] == "Specialized"
        assert body["agency_specialization"]["top_agency"] == "NSERC"
        assert body["average_duration"]["text"] != "N/A"
        assert "recipient_concentration" not in body


class TestInstitutes:
    def test_list_sorted_by_funding(self, client):
        body = client.get("/api/institutes").json()
        assert body["pagination"]["total"] == 3
        assert [i["name"] for i in body["data"]] == [
            "University of British Columbia", "McGill University",
            "University of Toronto",
        ]

    def test_profile(self, client):
        i = client.get("/api/institutes/1").json()
        assert i["name"] == "University of Toronto"
        assert i["grant_count"] == 3
        assert i["total_funding"] == 225000.0
        assert i["recipient_count"] == 2
        assert i["funding_agencies_count"] == 2

    def test_null_values_excluded_from_average(self, client):
        i = client.get("/api/institutes/2").json()
        assert i["grant_count"] == 2
        assert i["avg_funding"] == 250000.0

    def test_missing(self, client):
        resp = client.get("/api/institutes/42")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Institute 42 not found"

    def test_grants(self, client):
        grants = client.get("/api/institutes/1/grants").json()
        assert [g["ref_number"] for g in grants] == ["R-005", "R-003", "R-001"]

    def test_recipients(self, client):
        recipients = client.get("/api/institutes/1/recipients").json()
        assert [r["legal_name"] for r in recipients] == ["Jane Smith", "Alice 50%_Lab"]

    def test_analytics(self, client):
        body = client.get("/api/institutes/1/analytics").json()
        assert body["recipient_concentration"] == {
            "rating": "Highly Concentrated", "concentration": 100.0,
        }
        assert [r["legal_name"] for r in body["top_recipients"]] == [
            "Jane Smith", "Alice 50%_Lab",
        ]

    def test_sort_by_recipient_count(self, client):
        body = client.get(
            "/api/institutes", params={"sort": "recipient_count", "dir": "desc"}
        ).json()
        assert body["data"][0]["name"] == "University of Toronto"
