from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from cloudrecon.modules.identity.domain.users import (
    UserProvisioningReconciler,
    UserSpec,
    generate_temporary_password,
    load_users_csv,
)
from cloudrecon.modules.reconciliation.domain.models import OutcomeStatus
from cloudrecon.shared.core.exceptions import TransportError, ValidationError


def _write(tmp_path, text):
    path = tmp_path / "users.csv"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_users_csv_maps_header_aliases(tmp_path):
    path = _write(
        tmp_path,
        "UserPrincipalName,Display Name,First Name,Last Name,Department,UsageLocation\n"
        "ada@contoso.com,Ada Lovelace,Ada,Lovelace,Engineering,gb\n"
        "alan@contoso.com,Alan Turing,,,,\n",
    )

    users = load_users_csv(path)

    assert [u.user_principal_name for u in users] == ["ada@contoso.com", "alan@contoso.com"]
    assert users[0].given_name == "Ada"
    assert users[0].usage_location == "GB"
    assert users[1].department is None


@pytest.mark.parametrize(
    "body,fragment",
    [
        ("UserPrincipalName,DisplayName\nnot-an-email,Bad\n", "users.csv:2"),
        ("UserPrincipalName,DisplayName\na@contoso.com,A\nA@contoso.com,A2\n", "duplicate"),
        ("UserPrincipalName,DisplayName\na@contoso.com,\n", "users.csv:2"),
    ],
)
def test_load_users_csv_rejects_invalid_rows(tmp_path, body, fragment):
    with pytest.raises(ValidationError) as exc:
        load_users_csv(_write(tmp_path, body))
    assert fragment in exc.value.message


def test_temporary_password_complexity():
    for _ in range(20):
        password = generate_temporary_password()
        assert len(password) == 20
        assert any(c.islower() for c in password)
        assert any(c.isupper() for c in password)
        assert any(c.isdigit() for c in password)


def test_graph_payload_forces_password_change():
    spec = UserSpec(user_principal_name="grace.hopper@contoso.com", display_name="Grace Hopper", job_title="Admiral")
    payload = spec.graph_payload("Secret-123!")
    assert payload["mailNickname"] == "grace.hopper"
    assert payload["passwordProfile"] == {"forceChangePasswordNextSignIn": True, "password": "Secret-123!"}
    assert payload["jobTitle"] == "Admiral"
    assert "surname" not in payload


@pytest.fixture
def graph():
    client = MagicMock()
    client.get_user = AsyncMock(return_value=None)
    client.create_user = AsyncMock(return_value={"id": "new-object-id"})
    return client


@pytest.fixture
def users():
    return [
        UserSpec(user_principal_name="ada@contoso.com", display_name="Ada"),
        UserSpec(user_principal_name="alan@contoso.com", display_name="Alan"),
    ]


@pytest.mark.asyncio
async def test_existing_users_are_skipped(graph, users):
    graph.get_user.side_effect = lambda upn: {"id": "x"} if upn == "ada@contoso.com" else None
    reconciler = UserProvisioningReconciler(graph, users)

    summary = await reconciler.run(reconciler.descriptors())

    assert [o.status for o in summary.outcomes] == [OutcomeStatus.SKIPPED, OutcomeStatus.CREATED]
    graph.create_user.assert_awaited_once()
    assert graph.create_user.await_args.args[0]["userPrincipalName"] == "alan@contoso.com"


@pytest.mark.asyncio
async def test_temporary_password_never_logged_or_reported(graph, users):
    reconciler = UserProvisioningReconciler(graph, users[:1])

    with capture_logs() as logs:
        summary = await reconciler.run(reconciler.descriptors())

    password = graph.create_user.await_args.args[0]["passwordProfile"]["password"]
    assert password not in summary.outcomes[0].detail
    assert all(password not in repr(entry) for entry in logs)
    assert any(entry["event"] == "directory_user_created" for entry in logs)


@pytest.mark.asyncio
async def test_dry_run_and_failure_isolation(graph, users):
    preview = UserProvisioningReconciler(graph, users, dry_run=True)
    assert (await preview.run(preview.descriptors())).skipped == 2
    graph.create_user.assert_not_awaited()

    graph.create_user.side_effect = [TransportError("Microsoft Graph user create failed (400)"), {"id": "2"}]
    reconciler = UserProvisioningReconciler(graph, users)
    summary = await reconciler.run(reconciler.descriptors())
    assert [o.status for o in summary.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.CREATED]
