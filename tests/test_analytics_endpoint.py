"""Tests for GET /api/analytics/trends."""
import pytest

from api.routes.analytics import yearly_trends


def _trends(client, **params):
    resp = client.get("/api/analytics/trends", params=params)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestFundingByAgency:
    def test_categories_ordered_by_total(self, client):
        body = _trends(client)
        assert body["metric"] == "funding"
        assert body["group_by"] == "org"
        assert body["categories"] == ["NSERC", "CIHR", "SSHRC"]

    def test_one_point_per_year(self, client):
        points = {p["year"]: p for p in _trends(client)["data"]}
        assert sorted(points) == [2018, 2019, 2020, 2021, 2022]
        assert points[2021]["NSERC"] == 500000
        assert points[2021]["SSHRC"] == 50000
        assert "CIHR" not in points[2021]

    def test_null_values_count_as_zero(self, client):
        points = {p["year"]: p for p in _trends(client)["data"]}
        assert points[2018] == {"year": 2018, "CIHR": 0}


class TestGrouping:
    def test_counts_by_province(self, client):
        body = _trends(client, metric="counts", group_by="province")
        assert body["categories"] == ["ON", "QC", "BC"]
        points = {p["year"]: p for p in body["data"]}
        assert points[2021] == {"year": 2021, "ON": 1, "BC": 1}

    def test_by_program(self, client):
        body = _trends(client, group_by="program")
        assert body["categories"][0] == "Discovery Grants"

    def test_recipient_filter(self, client):
        body = _trends(client, recipient_id=1)
        assert body["categories"] == ["NSERC", "SSHRC"]
        assert [p["year"] for p in body["data"]] == [2019, 2021]

    def test_institute_filter(self, client):
        body = _trends(client, metric="counts", institute_id=2)
        assert body["categories"] == ["CIHR"]
        assert sum(p["CIHR"] for p in body["data"]) == 2


class TestValidation:
    def test_bad_group_by(self, client):
        resp = client.get("/api/analytics/trends", params={"group_by": "planet"})
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("group_by must be one of:")

    def test_bad_metric(self, client):
        resp = client.get("/api/analytics/trends", params={"metric": "median"})
        assert resp.status_code == 400

    def test_function_rejects_unknown_inputs(self, db):
        with pytest.raises(ValueError):
            yearly_trends(db, "funding", "planet")
        with pytest.raises(ValueError):
            yearly_trends(db, "median", "org")


class TestCaching:
    def test_cached_until_history_changes(self, client, db):
        before = _trends(client, metric="counts")
        db.execute("UPDATE grants SET org = 'SSHRC' WHERE ref_number = 'R-004'")
        db.commit()
        assert _trends(client, metric="counts") == before

        client.post("/api/history", json={"searchTerms": {"grant": "quantum"}})
        after = {p["year"]: p for p in _trends(client, metric="counts")["data"]}
        assert after[2021] == {"year": 2021, "SSHRC": 2}
