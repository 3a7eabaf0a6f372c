"""Tests for manifest_deployer.orphans module."""

import pytest

from conftest import RecordingEvent, configmap
from manifest_deployer.errors import (
    AggregateError,
    CancelledError,
    ClientError,
    DeletionTimeoutError,
)
from manifest_deployer.models import ManagedResourceStatus, ManifestPolicy, TypedReference
from manifest_deployer.orphans import OrphanReconciler, contains_object


def managed(obj, policy=ManifestPolicy.MANAGE):
    return ManagedResourceStatus(policy=policy, resource=TypedReference.from_object(obj))


@pytest.fixture
def reconciler(store):
    return OrphanReconciler(store, delete_timeout=0, poll_interval=0, max_workers=4)


class TestContainsObject:
    def test_matching_uid(self):
        a = configmap("a", uid="u1")
        assert contains_object(a, [configmap("renamed", uid="u1")])

    def test_different_uid_same_name(self):
        # recreated under the same name: a different object
        assert not contains_object(configmap("a", uid="u1"), [configmap("a", uid="u2")])

    def test_name_fallback_without_uid(self):
        assert contains_object(configmap("a", uid="u1"), [configmap("a")])

    def test_version_ignored(self):
        old = {"apiVersion": "apps/v1beta2", "kind": "Deployment", "metadata": {"name": "d", "namespace": "x"}}
        new = {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "d", "namespace": "x"}}
        assert contains_object(old, [new])

    def test_group_differs(self):
        ours = {"apiVersion": "example.com/v1", "kind": "Deployment", "metadata": {"name": "d"}}
        theirs = {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "d"}}
        assert not contains_object(ours, [theirs])

    def test_namespace_differs(self):
        assert not contains_object(configmap("a", namespace="x"), [configmap("a", namespace="y")])

    def test_none_entries_skipped(self):
        assert not contains_object(configmap("a"), [None])
        assert contains_object(configmap("a"), [None, configmap("a")])


class TestReconcile:
    def test_deletes_only_missing(self, store, reconciler):
        a = store.add(configmap("a"), uid="uid1")
        b = store.add(configmap("b"), uid="uid2")
        reconciler.reconcile([managed(a), managed(b)], [a])
        assert store.lookup("v1", "ConfigMap", "a", "default") is not None
        assert store.lookup("v1", "ConfigMap", "b", "default") is None
        assert [key[3] for key in store.verbs("delete")] == ["b"]

    def test_nothing_previous(self, store, reconciler):
        reconciler.reconcile([], [configmap("a")])
        assert store.calls == []

    @pytest.mark.parametrize("policy", [ManifestPolicy.KEEP, ManifestPolicy.IGNORE])
    def test_retained_policies(self, store, reconciler, policy):
        a = store.add(configmap("a"))
        reconciler.reconcile([managed(a, policy)], [])
        assert store.calls == []
        assert store.lookup("v1", "ConfigMap", "a", "default") is not None

    def test_fallback_is_deleted(self, store, reconciler):
        a = store.add(configmap("a"))
        reconciler.reconcile([managed(a, ManifestPolicy.FALLBACK)], [])
        assert store.lookup("v1", "ConfigMap", "a", "default") is None

    def test_already_gone(self, store, reconciler):
        reconciler.reconcile([managed(configmap("gone"))], [])
        assert store.verbs("delete") == []

    def test_recreated_object_is_deleted(self, store, reconciler):
        # live uid differs from the one current carries
        a = store.add(configmap("a"), uid="uid-new")
        reconciler.reconcile([managed(a)], [configmap("a", uid="uid-old")])
        assert store.lookup("v1", "ConfigMap", "a", "default") is None

    def test_many_orphans(self, store, reconciler):
        objs = [store.add(configmap(f"cm-{i}")) for i in range(10)]
        reconciler.reconcile([managed(o) for o in objs], objs[:2])
        assert len(store.verbs("delete")) == 8
        assert sorted(k[3] for k in store.objects) == ["cm-0", "cm-1"]

    def test_deletion_timeout(self, store, reconciler):
        a = store.add(configmap("a"))
        store.stuck.add(store.obj_key(a))
        with pytest.raises(AggregateError) as exc:
            reconciler.reconcile([managed(a)], [])
        assert len(exc.value.errors) == 1
        assert isinstance(exc.value.errors[0], DeletionTimeoutError)
        assert "ConfigMap default/a" in str(exc.value)

    def test_delete_failure_collected_others_proceed(self, store, reconciler):
        objs = [store.add(configmap(name)) for name in ("a", "b", "c")]
        store.failures[("delete", "b")] = ClientError("forbidden", status=403)
        with pytest.raises(AggregateError) as exc:
            reconciler.reconcile([managed(o) for o in objs], [])
        assert len(exc.value.errors) == 1
        assert exc.value.errors[0].status == 403
        assert not exc.value.retryable
        assert sorted(k[3] for k in store.objects) == ["b"]

    def test_get_failure_collected(self, store, reconciler):
        objs = [store.add(configmap(name)) for name in ("a", "b")]
        store.failures[("get", "a")] = ClientError("server error", status=500)
        with pytest.raises(AggregateError) as exc:
            reconciler.reconcile([managed(o) for o in objs], [])
        assert exc.value.retryable
        assert store.lookup("v1", "ConfigMap", "b", "default") is None

    def test_cancelled_while_waiting(self, store):
        a = store.add(configmap("a"))
        store.stuck.add(store.obj_key(a))
        cancel = RecordingEvent()
        cancel.set()
        reconciler = OrphanReconciler(store, delete_timeout=60, poll_interval=1, cancel=cancel)
        with pytest.raises(CancelledError):
            reconciler.reconcile([managed(a)], [])
        assert cancel.waits == [1]


class TestWaitForDeletion:
    def test_polls_until_gone(self, store):
        a = store.add(configmap("a"))

        def remove(n):
            if n == 2:
                store.objects.pop(store.obj_key(a))

        cancel = RecordingEvent(on_wait=remove)
        reconciler = OrphanReconciler(store, delete_timeout=60, poll_interval=5, cancel=cancel)
        assert reconciler.wait_for_deletion(a) is None
        assert cancel.waits == [5, 5]

    def test_recreated_under_same_name_counts_as_gone(self, store):
        deleted = store.add(configmap("a"), uid="uid-old")
        store.objects[store.obj_key(deleted)]["metadata"]["uid"] = "uid-new"
        cancel = RecordingEvent()
        reconciler = OrphanReconciler(store, delete_timeout=60, poll_interval=5, cancel=cancel)
        assert reconciler.wait_for_deletion(deleted) is None
        assert cancel.waits == []

    def test_same_uid_still_deleting(self, store):
        deleted = store.add(configmap("a"), uid="uid-old")
        reconciler = OrphanReconciler(store, delete_timeout=0, poll_interval=5, cancel=RecordingEvent())
        assert isinstance(reconciler.wait_for_deletion(deleted), DeletionTimeoutError)
