from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.models import DataScope, Status

TENANT = "T1"


class TestFindByIdentity:
    def test_live_row_wins_over_soft_deleted_one(self):
        store = MemoryStore()
        store.add_principal(5, "bob", tenant_id=TENANT, password_hash="old", deleted=True)
        store.add_principal(9, "bob", tenant_id=TENANT, password_hash="new")

        principal = store.find_by_identity("bob", tenant_id=TENANT, include_deleted=True)

        assert principal.id == 9
        assert not principal.deleted

    def test_lowest_id_among_equal_rows(self):
        store = MemoryStore()
        store.add_principal(12, "bob", tenant_id=TENANT, deleted=True)
        store.add_principal(4, "bob", tenant_id=TENANT, deleted=True)

        assert store.find_by_identity("bob", include_deleted=True).id == 4
        assert store.find_by_identity("bob") is None

    def test_returns_copies(self):
        store = MemoryStore()
        store.add_principal(1, "carol", role_ids=[2])

        store.find_by_identity("carol").role_ids.append(99)

        assert store.find_by_identity("carol").role_ids == [2]


class TestFindRoles:
    def test_returns_copies(self):
        store = MemoryStore()
        store.add_role(2, "mgr", data_scope=DataScope.DEPT)

        role = store.find_roles([2])[0]
        role.status = Status.DISABLED
        role.key = "changed"

        stored = store.find_roles([2])[0]
        assert stored.key == "mgr"
        assert stored.is_active

    def test_deleted_roles_hidden(self):
        store = MemoryStore()
        store.add_role(2, "mgr")
        store.add_role(3, "old", deleted=True)

        assert [role.id for role in store.find_roles([3, 2, 2])] == [2]
