from __future__ import annotations

import math


def _emails(users):
    return [user.account.email for user in users]


def test_member_sees_self_and_users_sharing_a_tenant(service, stores):
    alice = stores.accounts.seed("alice@example.com", ["red"])
    stores.accounts.seed("bob@example.com", ["red"])
    stores.accounts.seed("carol@example.com", ["green"])
    stores.accounts.seed("dave@example.com", ["blue"])
    stores.accounts.seed("erin@example.com", ["green", "red"])

    visible = service.list_managed_users(alice.account_id)

    assert _emails(visible) == ["alice@example.com", "bob@example.com", "erin@example.com"]


def test_member_of_two_tenants_sees_both(service, stores):
    stores.accounts.seed("alice@example.com", ["red"])
    stores.accounts.seed("carol@example.com", ["green"])
    stores.accounts.seed("dave@example.com", ["blue"])
    frank = stores.accounts.seed("frank@example.com", ["green", "blue"])

    visible = service.list_managed_users(frank.account_id)

    assert _emails(visible) == ["carol@example.com", "dave@example.com", "frank@example.com"]


def test_member_without_tenants_sees_only_self(service, stores):
    stores.accounts.seed("alice@example.com", ["red"])
    hermit = stores.accounts.seed("hermit@example.com", [])

    visible = service.list_managed_users(hermit.account_id)

    assert [user.account.account_id for user in visible] == [hermit.account_id]


def test_superuser_sees_everyone_regardless_of_tenant(service, stores):
    stores.accounts.seed("alice@example.com", ["red"])
    stores.accounts.seed("carol@example.com", ["green"])
    stores.accounts.seed("dave@example.com", ["blue"])
    root = stores.accounts.seed("root@example.com", [], roles=["user", "superuser"])

    visible = service.list_managed_users(root.account_id)

    assert _emails(visible) == [
        "alice@example.com",
        "carol@example.com",
        "dave@example.com",
        "root@example.com",
    ]


def test_unknown_actor_sees_nobody(service, stores):
    stores.accounts.seed("alice@example.com", ["red"])

    assert service.list_managed_users("no-such-account") == []


def test_accounts_without_profile_are_skipped(service, stores):
    alice = stores.accounts.seed("alice@example.com", ["red"])
    stores.accounts.seed("ghost@example.com", ["red"], with_profile=False)
    root = stores.accounts.seed("root@example.com", [], roles=["superuser"])

    assert _emails(service.list_managed_users(alice.account_id)) == ["alice@example.com"]
    assert "ghost@example.com" not in _emails(service.list_managed_users(root.account_id))


def test_composites_carry_role_assignments(service, stores, admin):
    bob = stores.accounts.seed("bob@example.com", ["acme"])
    service.assign_role_securely(admin.account_id, bob.account_id, "editor", "acme")

    visible = {user.account.email: user for user in service.list_managed_users(admin.account_id)}

    assert [(a.role_id, a.scope) for a in visible["bob@example.com"].assignments] == [("editor", "acme")]
    assert [(a.role_id, a.scope) for a in visible["admin@acme.com"].assignments] == [
        ("tenant_admin", "acme")
    ]


def test_directory_is_enumerated_in_pages(service, stores, settings):
    for idx in range(5):
        stores.accounts.seed(f"user{idx}@example.com", ["red"])
    actor = stores.accounts.seed("actor@example.com", ["red"])

    visible = service.list_managed_users(actor.account_id)

    assert len(visible) == 6
    assert stores.accounts.pages_fetched == math.ceil(6 / settings.directory_page_size)
