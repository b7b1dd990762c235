import pytest

from kubesync.common import (
    GroupVersionKind,
    HookDeletePolicy,
    HookType,
    OperationPhase,
    ResourceKey,
    ResultCode,
    get_annotations,
    group_version_kind,
    parse_delete_policy,
    parse_hook_type,
    resource_key,
)


def new_pod():
    return {"apiVersion": "v1", "kind": "Pod", "metadata": {"name": "my-pod"}}


def test_hook_type_values_match_annotation_text():
    for text in ["PreSync", "Sync", "PostSync", "SyncFail", "Skip"]:
        assert parse_hook_type(text).value == text


def test_parse_hook_type_rejects_garbage():
    assert parse_hook_type("Garbage") is None
    assert parse_hook_type("") is None


def test_parse_delete_policy():
    assert parse_delete_policy("HookSucceeded") is HookDeletePolicy.HOOK_SUCCEEDED
    assert parse_delete_policy("HookFailed") is HookDeletePolicy.HOOK_FAILED
    assert (
        parse_delete_policy("BeforeHookCreation")
        is HookDeletePolicy.BEFORE_HOOK_CREATION
    )
    assert parse_delete_policy("garbage") is None


@pytest.mark.parametrize(
    "value, running, completed, successful",
    [
        ("Running", True, False, False),
        ("Terminating", True, False, False),
        ("Failed", False, True, False),
        ("Error", False, True, False),
        ("Succeeded", False, True, True),
    ],
)
def test_operation_phase_predicates(value, running, completed, successful):
    phase = OperationPhase(value)
    assert phase.is_running() is running
    assert phase.is_completed() is completed
    assert phase.is_successful() is successful


def test_result_code_values():
    assert ResultCode.PRUNED.value == "Pruned"
    assert ResultCode("SyncFailed") is ResultCode.SYNC_FAILED


def test_get_annotations_missing():
    assert get_annotations(None) == {}
    assert get_annotations({}) == {}
    assert get_annotations(new_pod()) == {}


def test_get_annotations_is_a_copy():
    pod = new_pod()
    pod["metadata"]["annotations"] = {"foo": "bar"}
    result = get_annotations(pod)
    result["foo"] = "changed"
    assert pod["metadata"]["annotations"] == {"foo": "bar"}


@pytest.mark.parametrize(
    "api_version, expected",
    [
        ("v1", GroupVersionKind("", "v1", "Thing")),
        ("apps/v1", GroupVersionKind("apps", "v1", "Thing")),
        ("a/b/c", GroupVersionKind()),
    ],
)
def test_group_version_kind(api_version, expected):
    assert group_version_kind({"apiVersion": api_version, "kind": "Thing"}) == expected


def test_resource_key_from_object():
    obj = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "prod"},
    }
    key = resource_key(obj)
    assert key == ResourceKey("apps", "Deployment", "prod", "web")
    assert str(key) == "/".join(["apps", "Deployment", "prod", "web"])


def test_resource_key_is_hashable_and_equal_by_value():
    assert {resource_key(new_pod()): 1}[ResourceKey("", "Pod", "", "my-pod")] == 1