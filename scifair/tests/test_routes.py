"""
HTTP API tests.

Routes run against the test session through dependency overrides; callers
authenticate with real access tokens.
"""
import httpx
import pytest
import pytest_asyncio

from scifair.config import get_engine_settings
from scifair.config.engine_settings import EngineSettings
from scifair.database import get_db
from scifair.errors import ErrorCode
from scifair.main import app
from scifair.orm import Section
from scifair.rbac import create_access_token

from scifair.tests.conftest import OTHER_SUB_COUNTY

SUB = "Sub-County"
PART_A_SHEET = {"1": 5, "2": 4.5, "3": 9, "4": 6, "5": 3.5}


@pytest_asyncio.fixture
async def client(db_session):
    """Test client bound to the test session; sessions have no minimum duration."""
    route_settings = EngineSettings(
        point_table={1: 4, 2: 3, 3: 2, 4: 1},
        top_band_size=4,
        enforce_session_minimum=False,
        enforce_judging_hours=False,
    )

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine_settings] = lambda: route_settings

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


@pytest_asyncio.fixture
async def admin(seed):
    return await seed.sub_county_admin()


# =============================================================================
# Health and auth
# =============================================================================

class TestHealthAndAuth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/rankings", params={"level": SUB})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get(
            "/api/rankings", params={"level": SUB}, headers={"Authorization": "Bearer not-a-token"}
        )

        assert response.status_code == 401
        assert response.json()["code"] == ErrorCode.AUTH_INVALID

    @pytest.mark.asyncio
    async def test_judge_cannot_assign(self, client, seed):
        judge = await seed.judge("Amina")

        response = await client.post(
            "/api/assignments",
            json={"judge_id": judge.id, "category": "Physics", "section": "Part A", "level": SUB},
            headers=auth(judge),
        )

        assert response.status_code == 403
        assert response.json()["code"] == ErrorCode.FORBIDDEN


# =============================================================================
# Assignments
# =============================================================================

class TestAssignmentRoutes:

    @pytest.mark.asyncio
    async def test_assign_judge(self, client, seed, admin):
        await seed.project("Solar Dryer")
        await seed.project("Wind Pump")
        judge = await seed.judge("Amina")

        response = await client.post(
            "/api/assignments",
            json={"judge_id": judge.id, "category": "Physics", "section": "Part A", "level": SUB},
            headers=auth(admin),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == {"created": 2}

    @pytest.mark.asyncio
    async def test_jurisdiction_is_forbidden(self, client, seed, admin):
        await seed.project("Solar Dryer")
        judge = await seed.judge("Outsider", work_sub_county=OTHER_SUB_COUNTY)

        response = await client.post(
            "/api/assignments",
            json={"judge_id": judge.id, "category": "Physics", "section": "Part A", "level": SUB},
            headers=auth(admin),
        )

        assert response.status_code == 403
        assert response.json()["code"] == ErrorCode.JURISDICTION_MISMATCH

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, client, seed, admin):
        await seed.project("Solar Dryer")
        judge = await seed.judge("Amina")
        payload = {"judge_id": judge.id, "category": "Physics", "section": "Part A", "level": SUB}

        await client.post("/api/assignments", json=payload, headers=auth(admin))
        response = await client.post("/api/assignments", json=payload, headers=auth(admin))

        assert response.status_code == 409
        assert response.json()["code"] == ErrorCode.DUPLICATE_ASSIGNMENT

    @pytest.mark.asyncio
    async def test_unknown_section_is_validation_error(self, client, seed, admin):
        judge = await seed.judge("Amina")

        response = await client.post(
            "/api/assignments",
            json={"judge_id": judge.id, "category": "Physics", "section": "Part Z", "level": SUB},
            headers=auth(admin),
        )

        assert response.status_code == 422
        assert response.json()["code"] == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_judge_assignments_view(self, client, seed, admin):
        project = await seed.project("Solar Dryer")
        judge = await seed.judge("Amina")
        await seed.assignment(judge, project, Section.PART_A)

        response = await client.get(
            f"/api/assignments/judges/{judge.id}", params={"level": SUB}, headers=auth(admin)
        )

        assert response.status_code == 200
        assert response.json()["judge"]["id"] == judge.id


# =============================================================================
# Scoring
# =============================================================================

class TestScoringRoutes:

    @pytest.mark.asyncio
    async def test_start_and_submit(self, client, seed):
        project = await seed.project("Solar Dryer")
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)

        started = await client.post(f"/api/scoring/assignments/{row.id}/start", headers=auth(judge))
        assert started.status_code == 200

        rejected = await client.post(
            f"/api/scoring/assignments/{row.id}/submit",
            json={"breakdown": {**PART_A_SHEET, "1": 99}, "comments": "Good", "recommendations": "More trials"},
            headers=auth(judge),
        )
        assert rejected.status_code == 422
        assert rejected.json()["code"] == ErrorCode.INVALID_SCORE

        accepted = await client.post(
            f"/api/scoring/assignments/{row.id}/submit",
            json={"breakdown": PART_A_SHEET, "comments": "Good", "recommendations": "More trials"},
            headers=auth(judge),
        )
        assert accepted.status_code == 200
        assert accepted.json()["success"] is True

    @pytest.mark.asyncio
    async def test_other_judges_assignment_is_forbidden(self, client, seed):
        project = await seed.project("Solar Dryer")
        owner = await seed.judge("Amina")
        intruder = await seed.judge("Brian")
        row = await seed.assignment(owner, project, Section.PART_A)

        response = await client.post(f"/api/scoring/assignments/{row.id}/start", headers=auth(intruder))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_project_score(self, client, seed):
        judge = await seed.judge("Amina")

        response = await client.get("/api/scoring/projects/999", params={"level": SUB}, headers=auth(judge))

        assert response.status_code == 404


# =============================================================================
# Rankings and publication
# =============================================================================

class TestRankingAndPublicationRoutes:

    @pytest.mark.asyncio
    async def test_rankings(self, client, seed, panel, admin):
        first = await seed.project("Solar Dryer")
        second = await seed.project("Wind Pump")
        await seed.judged(first, ["24", "22"], ["40", "40"], panel)
        await seed.judged(second, ["20", "20"], ["30", "30"], panel)

        response = await client.get("/api/rankings", params={"level": SUB}, headers=auth(admin))

        assert response.status_code == 200
        ranks = {p["project_id"]: p["rank"] for p in response.json()["projects_with_points"]}
        assert ranks == {first.id: 1, second.id: 2}

    @pytest.mark.asyncio
    async def test_override_rejects_negative(self, client, seed, admin):
        project = await seed.project("Solar Dryer")

        response = await client.put(
            f"/api/rankings/projects/{project.id}/override",
            json={"override_score": -2},
            headers=auth(admin),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_publish_flow(self, client, seed, panel, admin):
        project = await seed.project("Solar Dryer")
        await seed.judged(project, ["24", "22"], ["40", "40"], panel)

        status_response = await client.get(
            "/api/publication/status", params={"level": SUB}, headers=auth(admin)
        )
        assert status_response.json()["categories"][0]["state"] == "ready_to_publish"

        published = await client.post("/api/publication/publish", json={"level": SUB}, headers=auth(admin))
        assert published.status_code == 200
        assert published.json()["data"]["promoted_project_ids"] == [project.id]

        again = await client.post("/api/publication/publish", json={"level": SUB}, headers=auth(admin))
        assert again.status_code == 409
        assert again.json()["code"] == ErrorCode.ALREADY_PUBLISHED

    @pytest.mark.asyncio
    async def test_publish_blocked_by_unjudged_projects(self, client, seed, panel, admin):
        await seed.project("Solar Dryer")

        response = await client.post("/api/publication/publish", json={"level": SUB}, headers=auth(admin))

        assert response.status_code == 409
        assert response.json()["code"] == ErrorCode.PROJECTS_NOT_FULLY_JUDGED
        assert response.json()["kind"] == "PRECONDITION_NOT_MET"
