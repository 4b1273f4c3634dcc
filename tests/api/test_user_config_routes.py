"""User Config Routes — create, read, and merge per-user preferences.

Tests:
    - GET of a missing config is 404 (no implicit creation)
    - POST creates with defaults merged under the given values; a second POST is 409
    - PUT merges into the stored config; PUT on a missing config is 404
    - Invalid strategy values are rejected with 400
"""


def _url(user_id: str) -> str:
    return f"/api/v1/users/{user_id}/config"


async def test_get_missing_config_returns_404(client):
    res = await client.get(_url("ghost"))
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


async def test_create_config_with_defaults(client):
    res = await client.post(_url("u1"), json={})
    assert res.status_code == 201
    body = res.json()["userConfig"]
    assert body["userId"] == "u1"
    assert body["config"]["sandboxAllocationStrategy"] == "Shared-Pool"
    assert body["config"]["sandboxPoolQuota"] == 5


async def test_create_config_accepts_snake_case_keys(client):
    res = await client.post(
        _url("u1"),
        json={"config": {"sandbox_allocation_strategy": "User-Exclusive", "sharedLinks": ["a"]}},
    )
    config = res.json()["userConfig"]["config"]
    assert config["sandboxAllocationStrategy"] == "User-Exclusive"
    assert config["sharedLinks"] == ["a"]


async def test_create_existing_config_returns_409(client):
    await client.post(_url("u1"), json={})
    res = await client.post(_url("u1"), json={})
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "USER_CONFIG_EXISTS"


async def test_update_merges_into_stored_config(client):
    await client.post(_url("u1"), json={"config": {"sandboxPoolQuota": 2}})
    res = await client.put(
        _url("u1"), json={"config": {"sandboxAllocationStrategy": "Session-Exclusive"}},
    )
    assert res.status_code == 200
    config = res.json()["userConfig"]["config"]
    assert config["sandboxAllocationStrategy"] == "Session-Exclusive"
    assert config["sandboxPoolQuota"] == 2

    fetched = await client.get(_url("u1"))
    assert fetched.json()["userConfig"]["config"] == config


async def test_update_missing_config_returns_404(client):
    res = await client.put(_url("ghost"), json={"config": {"sandboxPoolQuota": 1}})
    assert res.status_code == 404


async def test_invalid_strategy_returns_400(client):
    res = await client.post(
        _url("u1"), json={"config": {"sandboxAllocationStrategy": "Whatever"}},
    )
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"
