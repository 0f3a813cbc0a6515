# backend/conftest.py
"""
Pytest configuration and fixtures for NutriTrack tests
Provides an in-memory database, a seeded catalog, goals and API clients
"""

import pytest
from datetime import datetime
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from nutritrack.models.database import Base, Food, Recipe, NutritionGoal, LegacyConsumptionEntry, get_db
from nutritrack.services.consumption_service import ConsumptionService
from nutritrack.services.providers import InMemoryActivityLog

USER_ID = 1
OTHER_USER_ID = 2

# Monday
BREAKFAST_TIME = datetime(2024, 3, 4, 8, 0)


# ===== DATABASE FIXTURES =====

@pytest.fixture(scope="function")
def test_engine():
    """
    In-memory SQLite shared by every session of a test
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Provide a clean test database for each test"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# ===== CATALOG FIXTURES =====

@pytest.fixture
def foods(test_db: Session):
    """apple, chicken breast and milk, nutrition per 100 g"""
    rows = [
        Food(id=1, name="Apple", calories_per_100g=52, protein_per_100g=0.3, carbs_per_100g=14,
             fat_per_100g=0.2, fiber_per_100g=2.4, sugar_per_100g=10.4, sodium_per_100g=1,
             piece_weight_g=180),
        Food(id=2, name="Chicken Breast", calories_per_100g=165, protein_per_100g=31, carbs_per_100g=0,
             fat_per_100g=3.6, sodium_per_100g=74, cholesterol_per_100g=85, saturated_fat_per_100g=1),
        Food(id=3, name="Milk", calories_per_100g=42, protein_per_100g=3.4, carbs_per_100g=5,
             fat_per_100g=1, sugar_per_100g=5, sodium_per_100g=44, density_g_per_ml=1.03),
    ]
    test_db.add_all(rows)
    test_db.commit()
    return {food.name.lower().replace(" ", "_"): food for food in rows}


@pytest.fixture
def recipe(test_db: Session):
    """Four servings, 400 kcal each"""
    row = Recipe(
        id=1,
        name="Chicken Stir Fry",
        servings=4,
        nutrition_per_serving={"calories": 400, "protein": 30, "carbs": 40, "fat": 12, "fiber": 4},
    )
    test_db.add(row)
    test_db.commit()
    return row


@pytest.fixture
def catalog(foods, recipe):
    return {"foods": foods, "recipe": recipe}


@pytest.fixture
def nutrition_goal(test_db: Session):
    goal = NutritionGoal(
        user_id=USER_ID,
        daily_calories_target=2000,
        daily_protein_target=150,
        daily_carbs_target=250,
        daily_fat_target=70,
        is_active=True,
    )
    test_db.add(goal)
    test_db.commit()
    return goal


# ===== SERVICE FIXTURES =====

@pytest.fixture
def activity_log():
    return InMemoryActivityLog()


@pytest.fixture
def service(test_db: Session, catalog, activity_log):
    return ConsumptionService(test_db, activity_log=activity_log)


@pytest.fixture
def make_entry(service):
    """Create an entry for USER_ID and return the stored dict"""
    def _make(food_id: int = 1, quantity: float = 150, consumed_at: datetime = BREAKFAST_TIME,
              meal_type: str = "breakfast", user_id: int = USER_ID, **extra):
        payload = {
            "item_type": "food",
            "item_id": food_id,
            "quantity": quantity,
            "unit": "g",
            "meal_type": meal_type,
            "consumed_at": consumed_at,
        }
        payload.update(extra)
        return service.create_entry(user_id, payload)["entry"]
    return _make


@pytest.fixture
def legacy_rows(test_db: Session):
    """One food row, one recipe row, one hybrid row and one row referencing nothing"""
    rows = [
        LegacyConsumptionEntry(
            id=1, user_id=USER_ID, food_id=1, quantity=150, unit="g", meal_type="breakfast",
            consumed_at=datetime(2024, 3, 1, 8, 0), entry_method="manual",
            nutrition={"calories": 78, "protein": 0.45, "carbs": 21, "fat": 0.3},
            notes="Crunchy", tags=["Fruit", "fruit", " snack "],
        ),
        LegacyConsumptionEntry(
            id=2, user_id=USER_ID, food_id=None, meal_type="dinner",
            consumed_at=datetime(2024, 3, 1, 19, 0), entry_method="recipe",
            nutrition={"calories": 800, "protein": 60, "carbs": 80, "fat": 24},
            recipe_context={"recipe_id": 1, "recipe_name": "Chicken Stir Fry", "serving_size": 2,
                            "total_servings": 4},
        ),
        LegacyConsumptionEntry(
            id=3, user_id=OTHER_USER_ID, food_id=2, quantity=200, unit="g", meal_type="lunch",
            consumed_at=datetime(2024, 3, 2, 12, 0), entry_method="barcode_scan",
            nutrition={"calories": 330, "protein": 62, "carbs": 0, "fat": 7.2},
            recipe_context={"recipe_id": 1, "recipe_name": "Chicken Stir Fry", "serving_size": 1},
        ),
        LegacyConsumptionEntry(
            id=4, user_id=OTHER_USER_ID, food_id=None, meal_type="snack",
            consumed_at=datetime(2024, 3, 2, 15, 0), nutrition={},
        ),
    ]
    test_db.add_all(rows)
    test_db.commit()
    return rows


# ===== API CLIENT FIXTURES =====

@pytest.fixture
def client(session_factory, catalog):
    """Test client whose requests use the in-memory database"""
    from nutritrack.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    return {"X-User-Id": str(USER_ID)}


@pytest.fixture
def other_user_headers():
    return {"X-User-Id": str(OTHER_USER_ID)}


@pytest.fixture
def admin_headers():
    return {"X-User-Id": "99", "X-User-Role": "admin"}
