"""
Tests for the Consumption API router
Runs the FastAPI app against the in-memory database
"""

from datetime import datetime

from conftest import USER_ID
from nutritrack.models.entry_types import Unit
from nutritrack.schemas.consumption import ConsumptionEntryCreate

APPLE = {
    "item_type": "food",
    "item_id": 1,
    "quantity": 150,
    "unit": "g",
    "meal_type": "breakfast",
    "consumed_at": "2024-03-04T08:00:00",
}


def create(client, headers, payload=None):
    response = client.post("/api/consumption", json=payload or APPLE, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]["entry"]


class TestIdentity:

    def test_missing_user_header(self, client):
        response = client.get("/api/consumption")
        assert response.status_code == 401

    def test_invalid_user_header(self, client):
        response = client.get("/api/consumption", headers={"X-User-Id": "abc"})
        assert response.status_code == 401


class TestEntryEndpoints:

    def test_create_entry(self, client, user_headers):
        response = client.post("/api/consumption", json=APPLE, headers=user_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["entry"]["user_id"] == USER_ID
        assert body["data"]["entry"]["nutrition"]["calories"] == 78.0
        assert body["data"]["nutrition_summary"]["calculation_source"] == "food_database"

    def test_domain_validation_error(self, client, user_headers):
        response = client.post("/api/consumption", json={**APPLE, "quantity": -1}, headers=user_headers)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["type"] == "ValidationError"

    def test_malformed_body(self, client, user_headers):
        response = client.post("/api/consumption", json={**APPLE, "quantity": "lots"}, headers=user_headers)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid request"

    def test_foreign_entry_is_not_found(self, client, user_headers, other_user_headers):
        entry = create(client, user_headers)
        response = client.get(f"/api/consumption/{entry['id']}", headers=other_user_headers)

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "NotFoundError"

    def test_lifecycle(self, client, user_headers):
        entry = create(client, user_headers)
        url = f"/api/consumption/{entry['id']}"

        updated = client.put(url, json={"quantity": 300}, headers=user_headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["entry"]["nutrition"]["calories"] == 156.0

        deleted = client.delete(url, headers=user_headers)
        assert deleted.status_code == 200
        assert client.get(url, headers=user_headers).status_code == 404

        restored = client.post(f"{url}/restore", headers=user_headers)
        assert restored.status_code == 200
        assert restored.json()["data"]["entry"]["tracking"]["is_deleted"] is False

        copy = client.post(f"{url}/duplicate", json={"meal_type": "snack"}, headers=user_headers)
        assert copy.status_code == 201
        assert copy.json()["data"]["entry"]["tracking"]["original_entry_id"] == entry["id"]

        recalculated = client.post(f"{url}/recalculate", headers=user_headers)
        assert recalculated.status_code == 200

    def test_hard_delete_needs_admin(self, client, user_headers, admin_headers):
        entry = create(client, user_headers)
        url = f"/api/consumption/{entry['id']}"

        assert client.delete(f"{url}?hard=true", headers=user_headers).status_code == 400
        assert client.delete(f"{url}?hard=true", headers=admin_headers).status_code == 200
        assert client.get(url, headers=admin_headers).status_code == 404

    def test_list_entries(self, client, user_headers):
        create(client, user_headers)
        create(client, user_headers, {**APPLE, "meal_type": "dinner", "consumed_at": "2024-03-05T19:00:00"})

        response = client.get("/api/consumption?meal_type=dinner", headers=user_headers)
        data = response.json()["data"]
        assert response.status_code == 200
        assert data["pagination"]["total"] == 1
        assert data["entries"][0]["meal_type"] == "dinner"

    def test_quick_meal(self, client, user_headers):
        response = client.post("/api/consumption/quick-meal", json={
            "items": [{"food_id": 1, "quantity": 150}, {"food_id": 2, "quantity": 100}],
            "meal_type": "lunch",
            "meal_name": "Chicken and apple",
            "consumed_at": "2024-03-04T12:00:00",
        }, headers=user_headers)

        assert response.status_code == 201
        assert response.json()["data"]["meal_summary"]["total_nutrition"]["calories"] == 243.0

    def test_recipe_meal(self, client, user_headers):
        response = client.post("/api/consumption/recipe-meal", json={
            "recipe_id": 1, "servings": 1.5, "meal_type": "dinner",
        }, headers=user_headers)

        assert response.status_code == 201
        assert response.json()["data"]["entry"]["nutrition"]["calories"] == 600.0

    def test_unknown_recipe(self, client, user_headers):
        response = client.post("/api/consumption/recipe-meal", json={"recipe_id": 77}, headers=user_headers)
        assert response.status_code == 404

    def test_search_and_suggestions(self, client, user_headers):
        create(client, user_headers, {**APPLE, "notes": "Granny Smith"})

        found = client.get("/api/consumption/search?q=granny", headers=user_headers)
        assert found.status_code == 200
        assert found.json()["data"]["pagination"]["total"] == 1
        assert client.get("/api/consumption/search?q=g", headers=user_headers).status_code == 400

        listed = client.get("/api/consumption?search=smith", headers=user_headers)
        assert listed.json()["data"]["pagination"]["total"] == 1

        suggestions = client.get("/api/consumption/suggestions", headers=user_headers)
        assert suggestions.status_code == 200
        assert suggestions.json()["data"]["suggestions"][0]["name"] == "Apple"

    def test_batch(self, client, user_headers):
        first = create(client, user_headers)
        response = client.post("/api/consumption/batch", json={
            "operation": "Delete", "entry_ids": [first["id"], 555],
        }, headers=user_headers)

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["success_count"] == 1
        assert data["error_count"] == 1


class TestAnalyticsEndpoints:

    def test_daily_summary(self, client, user_headers):
        create(client, user_headers)
        response = client.get("/api/consumption/summary/daily?date=2024-03-04", headers=user_headers)

        assert response.status_code == 200
        assert response.json()["data"]["total_nutrition"]["calories"] == 78.0

    def test_dashboard(self, client, user_headers, nutrition_goal):
        create(client, user_headers)
        response = client.get(
            "/api/consumption/dashboard?period=custom&date_from=2024-03-04&date_to=2024-03-04",
            headers=user_headers,
        )

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["totals"]["calories"] == 78.0
        assert data["goals"]["calories"] == 2000

    def test_stats(self, client, user_headers):
        create(client, user_headers)
        response = client.get(
            "/api/consumption/stats?date_from=2024-03-04&date_to=2024-03-10&group_by=week&metrics=calories,protein",
            headers=user_headers,
        )

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["metrics"] == ["calories", "protein"]
        assert data["breakdown"][0]["period"] == "2024-03-04"

    def test_stats_rejects_bad_group(self, client, user_headers):
        response = client.get(
            "/api/consumption/stats?date_from=2024-03-04&date_to=2024-03-10&group_by=hour",
            headers=user_headers,
        )
        assert response.status_code == 400

    def test_top_items_and_trends(self, client, user_headers):
        create(client, user_headers)

        top = client.get("/api/consumption/top-items?period=all", headers=user_headers)
        assert top.status_code == 200
        assert top.json()["data"]["items"][0]["name"] == "Apple"

        trends = client.get(
            "/api/consumption/trends?metric=calories&date_from=2024-03-04&date_to=2024-03-05",
            headers=user_headers,
        )
        assert trends.status_code == 200
        assert [point["value"] for point in trends.json()["data"]["points"]] == [78.0, 0.0]

    def test_goals_progress(self, client, user_headers, nutrition_goal):
        create(client, user_headers)
        response = client.get("/api/consumption/goals/progress?date=2024-03-04", headers=user_headers)

        assert response.status_code == 200
        assert response.json()["data"]["progress"]["calories"] == 4

    def test_sync_and_export(self, client, user_headers):
        create(client, user_headers)

        sync = client.post("/api/consumption/sync", json={"force": True}, headers=user_headers)
        assert sync.status_code == 200
        assert sync.json()["data"]["updated"] == 1

        export = client.get("/api/consumption/export?date_from=2024-03-04&date_to=2024-03-04",
                            headers=user_headers)
        assert export.status_code == 200
        assert export.json()["data"]["total_entries"] == 1


class TestServiceEndpoints:

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "operational"
        assert client.get("/health").json()["status"] == "healthy"


class TestDefaults:

    def test_daily_summary_defaults_to_current_utc_day(self, client, user_headers):
        create(client, user_headers, {**APPLE, "consumed_at": datetime.utcnow().isoformat()})
        response = client.get("/api/consumption/summary/daily", headers=user_headers)

        assert response.status_code == 200
        assert response.json()["data"]["date"] == datetime.utcnow().date().isoformat()
        assert response.json()["data"]["total_nutrition"]["calories"] == 78.0

    def test_unit_description_matches_accepted_units(self):
        description = ConsumptionEntryCreate.model_fields["unit"].description
        assert description.split(", ") == [unit.value for unit in Unit]
