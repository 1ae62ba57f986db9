import pytest

LOG = {
    "created_at": "2026-03-09T10:00:00+00:00",
    "action": "PC review approved for RFA-2026-1000042",
    "action_type": "review_approved",
    "details": {"stage": "pc"},
    "user": {"full_name": "Pia Coordinator", "role": "pc"},
    "submission": {"submission_id": "RFA-2026-1000042", "title": "Welding - Cohort 7"},
}


@pytest.mark.asyncio
async def test_records_can_read_audit_log(client, act_as, db):
    act_as("records")
    db.respond("audit_logs", [LOG])

    response = await client.get("/api/v1/audit-logs", params={"action_type": "review_approved"})

    assert response.status_code == 200
    assert response.json()["data"] == [LOG]
    db.tables["audit_logs"].eq.assert_any_call("action_type", "review_approved")


@pytest.mark.asyncio
async def test_audit_log_csv_download(client, act_as, db):
    act_as("administrator")
    db.respond("audit_logs", [LOG])

    response = await client.get("/api/v1/audit-logs", params={"download": "true"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    lines = response.text.splitlines()
    assert lines[0].startswith('"Date/Time","User","Role","Action"')
    assert '"Pia Coordinator"' in lines[1]


@pytest.mark.asyncio
async def test_empty_csv_download(client, act_as, db):
    act_as("institution_manager")
    response = await client.get("/api/v1/audit-logs", params={"download": "true"})
    assert response.text == "No data available"


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["instructor", "pc", "amo", "registration"])
async def test_audit_log_forbidden_for_other_roles(client, act_as, db, role):
    act_as(role)
    response = await client.get("/api/v1/audit-logs")
    assert response.status_code == 403
