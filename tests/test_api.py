"""API endpoint tests.

Requests go through the FastAPI app with the test session and settings
injected in place of the configured database.
"""

from collections.abc import AsyncGenerator
from decimal import Decimal
from uuid import uuid4

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import PAY_PERIOD, make_actor
from payrun_engine.api.app import create_app
from payrun_engine.api.dependencies import get_db_session
from payrun_engine.config import get_settings
from payrun_engine.services.authorization import Actor, Role


@pytest_asyncio.fixture
async def client(session, settings) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()

    async def override_session():
        yield session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def headers(actor: Actor) -> dict[str, str]:
    result = {
        "X-Organization-ID": str(actor.organization_id),
        "X-User-ID": str(actor.user_id),
        "X-User-Role": actor.role.value,
    }
    if actor.employee_id is not None:
        result["X-Employee-ID"] = str(actor.employee_id)
    return result


async def generate(client: AsyncClient, actor: Actor, pay_period: str = PAY_PERIOD) -> dict:
    response = await client.post(
        "/api/v1/payroll-runs",
        headers=headers(actor),
        json={"pay_period": pay_period},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestIdentityHeaders:
    async def test_organization_header_required(self, client: AsyncClient):
        response = await client.get("/api/v1/payroll-runs")

        assert response.status_code == 400
        assert "X-Organization-ID" in response.json()["detail"]

    async def test_unknown_role(self, client: AsyncClient, hr_actor):
        response = await client.get(
            "/api/v1/payroll-runs",
            headers={**headers(hr_actor), "X-User-Role": "contractor"},
        )

        assert response.status_code == 400
        assert "X-User-Role" in response.json()["detail"]

    async def test_employee_role_forbidden(self, client: AsyncClient, organization):
        response = await client.get(
            "/api/v1/payroll-runs",
            headers=headers(make_actor(organization, Role.EMPLOYEE)),
        )

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"


class TestPayrollRunEndpoints:
    async def test_generate(self, client: AsyncClient, payroll_setup, hr_actor):
        data = await generate(client, hr_actor)

        assert data["run"]["status"] == "completed"
        assert data["run"]["pay_period"] == PAY_PERIOD
        assert data["run"]["employee_count"] == 2
        assert Decimal(data["run"]["total_net"]) == Decimal("98146")
        assert {s["reason_code"] for s in data["skipped"]} == {
            "compensation_not_found",
            "no_working_days",
        }

    async def test_duplicate_generate(self, client: AsyncClient, payroll_setup, hr_actor):
        await generate(client, hr_actor)

        response = await client.post(
            "/api/v1/payroll-runs", headers=headers(hr_actor), json={"pay_period": PAY_PERIOD}
        )

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_RUN"

    async def test_malformed_period(self, client: AsyncClient, payroll_setup, hr_actor):
        response = await client.post(
            "/api/v1/payroll-runs", headers=headers(hr_actor), json={"pay_period": "April"}
        )
        assert response.status_code == 422

    async def test_out_of_range_month(self, client: AsyncClient, payroll_setup, hr_actor):
        response = await client.post(
            "/api/v1/payroll-runs", headers=headers(hr_actor), json={"pay_period": "2025-13"}
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_missing_reference_data(self, client: AsyncClient, organization, hr_actor):
        response = await client.post(
            "/api/v1/payroll-runs", headers=headers(hr_actor), json={"pay_period": PAY_PERIOD}
        )

        assert response.status_code == 422
        assert response.json()["code"] == "STATUTORY_CONFIG_MISSING"

    async def test_list_and_get(self, client: AsyncClient, payroll_setup, hr_actor):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]

        listing = await client.get(
            "/api/v1/payroll-runs", headers=headers(hr_actor), params={"status": "completed"}
        )
        assert listing.status_code == 200
        assert listing.json()["total"] == 1

        response = await client.get(f"/api/v1/payroll-runs/{run_id}", headers=headers(hr_actor))
        assert response.status_code == 200
        assert response.json()["payroll_run_id"] == run_id

    async def test_get_unknown_run(self, client: AsyncClient, organization, hr_actor):
        response = await client.get(f"/api/v1/payroll-runs/{uuid4()}", headers=headers(hr_actor))

        assert response.status_code == 404
        assert response.json()["code"] == "PAYROLL_RUN_NOT_FOUND"

    async def test_entries_and_generation_log(self, client: AsyncClient, payroll_setup, hr_actor):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]

        entries = await client.get(
            f"/api/v1/payroll-runs/{run_id}/entries", headers=headers(hr_actor)
        )
        assert entries.status_code == 200
        items = entries.json()["items"]
        assert len(items) == 2
        assert items[0]["employee_id"] == str(payroll_setup["salaried"].employee_id)
        assert items[0]["earnings_breakdown"][0]["code"] == "BASIC"

        log = await client.get(
            f"/api/v1/payroll-runs/{run_id}/generation-log", headers=headers(hr_actor)
        )
        assert log.status_code == 200
        assert len(log.json()) == 2

    async def test_approval_lifecycle(
        self, client: AsyncClient, payroll_setup, hr_actor, finance_actor
    ):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]
        base = f"/api/v1/payroll-runs/{run_id}"

        response = await client.post(f"{base}/submit", headers=headers(hr_actor))
        assert response.status_code == 200
        assert response.json()["status"] == "under_review"

        response = await client.post(f"{base}/approve", headers=headers(hr_actor))
        assert response.status_code == 403

        response = await client.post(f"{base}/approve", headers=headers(finance_actor))
        assert response.status_code == 200
        assert response.json()["approved_by"] == str(finance_actor.user_id)

        response = await client.post(f"{base}/lock", headers=headers(finance_actor))
        assert response.status_code == 200
        assert response.json()["status"] == "locked"

        response = await client.post(f"{base}/regenerate", headers=headers(hr_actor))
        assert response.status_code == 409
        assert response.json()["code"] == "IMMUTABLE_RUN"

        response = await client.delete(base, headers=headers(hr_actor))
        assert response.status_code == 409

    async def test_lock_before_approval(
        self, client: AsyncClient, payroll_setup, hr_actor, finance_actor
    ):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]

        response = await client.post(
            f"/api/v1/payroll-runs/{run_id}/lock", headers=headers(finance_actor)
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_regenerate(self, client: AsyncClient, payroll_setup, hr_actor):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]

        response = await client.post(
            f"/api/v1/payroll-runs/{run_id}/regenerate", headers=headers(hr_actor)
        )

        assert response.status_code == 200
        assert response.json()["run"]["status"] == "completed"
        assert Decimal(response.json()["run"]["total_net"]) == Decimal("98146")

    async def test_delete(self, client: AsyncClient, payroll_setup, hr_actor):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]

        response = await client.delete(f"/api/v1/payroll-runs/{run_id}", headers=headers(hr_actor))
        assert response.status_code == 204

        response = await client.get(f"/api/v1/payroll-runs/{run_id}", headers=headers(hr_actor))
        assert response.status_code == 404

    async def test_update_entry_lwp(self, client: AsyncClient, payroll_setup, hr_actor):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]
        entries = await client.get(
            f"/api/v1/payroll-runs/{run_id}/entries", headers=headers(hr_actor)
        )
        entry_id = entries.json()["items"][0]["payroll_entry_id"]

        response = await client.patch(
            f"/api/v1/payroll-runs/{run_id}/entries/{entry_id}",
            headers=headers(hr_actor),
            json={"lwp_days": 0},
        )
        assert response.status_code == 200
        assert Decimal(response.json()["net_pay"]) == Decimal("93450")

        run = await client.get(f"/api/v1/payroll-runs/{run_id}", headers=headers(hr_actor))
        assert Decimal(run.json()["total_net"]) == Decimal("107237")

    async def test_update_entry_lwp_validation(
        self, client: AsyncClient, payroll_setup, hr_actor
    ):
        run_id = (await generate(client, hr_actor))["run"]["payroll_run_id"]
        entries = await client.get(
            f"/api/v1/payroll-runs/{run_id}/entries", headers=headers(hr_actor)
        )
        entry_id = entries.json()["items"][0]["payroll_entry_id"]
        url = f"/api/v1/payroll-runs/{run_id}/entries/{entry_id}"

        response = await client.patch(url, headers=headers(hr_actor), json={"lwp_days": 0.3})
        assert response.status_code == 422

        response = await client.patch(url, headers=headers(hr_actor), json={"lwp_days": 30})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestDeclarationEndpoints:
    async def test_submit_and_approve(self, client: AsyncClient, payroll_setup, organization):
        employee = payroll_setup["salaried"]
        employee_actor = make_actor(organization, Role.EMPLOYEE, employee_id=employee.employee_id)
        finance = make_actor(organization, Role.FINANCE)

        response = await client.post(
            "/api/v1/declarations",
            headers=headers(employee_actor),
            json={
                "employee_id": str(employee.employee_id),
                "financial_year": "2025-2026",
                "section_type": "80C",
                "declared_amount": "200000",
            },
        )
        assert response.status_code == 201, response.text
        declaration_id = response.json()["investment_declaration_id"]
        assert response.json()["status"] == "submitted"

        response = await client.post(
            f"/api/v1/declarations/{declaration_id}/approve",
            headers=headers(finance),
            json={},
        )
        assert response.status_code == 200
        assert Decimal(response.json()["approved_amount"]) == Decimal("150000")

        response = await client.post(
            f"/api/v1/declarations/{declaration_id}/reject",
            headers=headers(finance),
            json={"notes": "late"},
        )
        assert response.status_code == 409

        listing = await client.get(
            "/api/v1/declarations",
            headers=headers(employee_actor),
            params={"employee_id": str(employee.employee_id)},
        )
        assert listing.status_code == 200
        assert listing.json()["total"] == 1

    async def test_employee_cannot_list_colleague(
        self, client: AsyncClient, payroll_setup, organization
    ):
        employee_actor = make_actor(
            organization, Role.EMPLOYEE, employee_id=payroll_setup["salaried"].employee_id
        )

        response = await client.get(
            "/api/v1/declarations",
            headers=headers(employee_actor),
            params={"employee_id": str(payroll_setup["esi"].employee_id)},
        )

        assert response.status_code == 403

    async def test_unknown_section(self, client: AsyncClient, payroll_setup, hr_actor):
        response = await client.post(
            "/api/v1/declarations",
            headers=headers(hr_actor),
            json={
                "employee_id": str(payroll_setup["salaried"].employee_id),
                "financial_year": "2025-2026",
                "section_type": "80Z",
                "declared_amount": "1000",
            },
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"
