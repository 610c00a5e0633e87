"""
测试视图模型读取与变更操作 API
"""

import json
import logging

import pytest
from fastapi.testclient import TestClient

from admin_aggregator.api.app import create_app
from admin_aggregator.audit import AUDIT_LOGGER_NAME


@pytest.fixture
def client(seeded):
    return TestClient(create_app(seeded))


def _keys(client, resource):
    response = client.get(f"/{resource}_view_model")
    assert response.status_code == 200
    return [row[0] for row in response.json()["items"]["items"]]


class TestViewModelApi:

    def test_list_view_shape(self, client):
        response = client.get("/applications_view_model")
        assert response.status_code == 200

        data = response.json()
        assert data["recordsTotal"] == 2
        assert data["recordsFiltered"] == 2
        assert data["items"]["connected"] is True
        assert len(data["items"]["items"]) == 2

    def test_detail_with_slash_in_key(self, client):
        response = client.get("/service_instances_view_model/si-1/true")
        assert response.status_code == 200
        assert response.json()["service_instance"]["name"] == "db"

    def test_unknown_resource_and_key(self, client):
        for path in ("/widgets_view_model", "/applications_view_model/nope", "/nothing/here"):
            response = client.get(path)
            assert response.status_code == 404
            assert response.text == "Page Not Found"

    def test_current_statistics(self, client):
        data = client.get("/current_statistics").json()
        assert data["apps"] == 2
        assert data["running_instances"] == 2
        assert data["total_instances"] == 3
        assert data["cells"] == 1

    def test_get_is_audited(self, client, caplog):
        caplog.set_level(logging.INFO, logger=AUDIT_LOGGER_NAME)
        client.get("/organizations_view_model", headers={"X-Admin-User": "carol"})

        messages = [r.getMessage() for r in caplog.records if r.name == AUDIT_LOGGER_NAME]
        assert messages == [
            "[ carol ] : [ authenticated ] : is admin? true",
            "[ carol ] : [ get ] : /organizations_view_model",
        ]

    def test_failed_and_health_gets_are_audited(self, client, caplog):
        caplog.set_level(logging.INFO, logger=AUDIT_LOGGER_NAME)

        assert client.get("/applications_view_model/nope").status_code == 404
        assert client.get("/widgets_view_model").status_code == 404
        assert client.get("/api/health").status_code == 200

        messages = [r.getMessage() for r in caplog.records if r.name == AUDIT_LOGGER_NAME]
        assert messages[1:] == [
            "[ admin ] : [ get ] : /applications_view_model/nope",
            "[ admin ] : [ get ] : /widgets_view_model",
            "[ admin ] : [ get ] : /api/health",
        ]


class TestOperations:

    def test_rename_organization_is_visible_immediately(self, client, backends):
        response = client.put("/organizations/org-1", content=b'{"name":"Org Renamed"}')

        assert response.status_code == 204
        assert backends.control_plane.mutations == [
            ("PUT", "/v2/organizations/org-1", "", b'{"name":"Org Renamed"}'),
        ]
        rows = client.get("/organizations_view_model").json()["items"]["items"]
        assert rows[0][1] == "Org Renamed"

    def test_delete_twice(self, client):
        assert client.delete("/applications/app-2").status_code == 204
        assert "app-2" not in _keys(client, "applications")

        response = client.delete("/applications/app-2")
        assert response.status_code == 404
        assert response.text == "Page Not Found"

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2]",
        b"{}",
        b'{"nmae": "typo"}',
        b'{"name": 5}',
    ])
    def test_malformed_body_is_rejected_without_backing_call(self, client, backends, body):
        response = client.put("/organizations/org-1", content=body)

        assert response.status_code == 400
        assert backends.control_plane.mutations == []

    def test_strict_boolean(self, client, backends):
        response = client.put("/feature_flags/user_org_creation", content=b'{"enabled": "true"}')
        assert response.status_code == 400

        response = client.put("/feature_flags/user_org_creation", content=b'{"enabled": true}')
        assert response.status_code == 204
        rows = client.get("/feature_flags_view_model").json()["items"]["items"]
        assert rows[0][1] is True

    def test_body_not_accepted_for_delete(self, client, backends):
        response = client.request("DELETE", "/routes/route-1", content=b'{"force": true}')
        assert response.status_code == 400
        assert backends.control_plane.mutations == []

    def test_backing_failure_is_returned_verbatim(self, client, backends):
        """测试：后端错误的状态码和响应体原样返回"""
        error = b'{"code":30002,"description":"The organization name is taken: Org One","error_code":"CF-OrganizationNameTaken"}'
        backends.control_plane.failures[("PUT", "/v2/organizations/org-1")] = (400, error)

        response = client.put("/organizations/org-1", content=b'{"name":"Org One"}')

        assert response.status_code == 400
        assert response.content == error
        assert response.headers["content-type"].startswith("application/json")

    def test_query_string_passes_through(self, client, backends):
        response = client.delete("/organizations/org-1?recursive=true")

        assert response.status_code == 204
        assert backends.control_plane.mutations == [("DELETE", "/v2/organizations/org-1", "recursive=true", b"")]
        assert _keys(client, "organizations") == []

    def test_recursive_purge_flags_pass_through(self, client, backends, caplog):
        """测试：recursive/purge 查询参数原样转发并写入审计日志"""
        client.get("/service_instances_view_model")
        caplog.set_level(logging.INFO, logger=AUDIT_LOGGER_NAME)
        caplog.clear()

        response = client.delete("/service_instances/si-1/true?recursive=true&purge=true")

        assert response.status_code == 204
        assert backends.control_plane.mutations == [
            ("DELETE", "/v2/service_instances/si-1", "recursive=true&purge=true", b""),
        ]
        messages = [r.getMessage() for r in caplog.records if r.name == AUDIT_LOGGER_NAME]
        assert messages == ["[ admin ] : [ delete ] : /service_instances/si-1/true?recursive=true&purge=true"]
        assert _keys(client, "service_instances") == ["upsi-1"]

    def test_operation_writes_one_audit_line(self, client, caplog):
        client.get("/applications_view_model")
        caplog.set_level(logging.INFO, logger=AUDIT_LOGGER_NAME)
        caplog.clear()

        client.put("/applications/app-2", content=b'{"state":"STARTED"}')

        messages = [r.getMessage() for r in caplog.records if r.name == AUDIT_LOGGER_NAME]
        assert messages == ['[ admin ] : [ put ] : /applications/app-2; body = {"state":"STARTED"}']

    def test_rejected_operation_is_not_audited(self, client, caplog):
        caplog.set_level(logging.INFO, logger=AUDIT_LOGGER_NAME)
        client.put("/organizations/org-1", content=b"not json")
        assert not [r for r in caplog.records if "[ put ]" in r.getMessage()]

    def test_unknown_operation(self, client):
        response = client.put("/widgets/1", content=b'{"name":"x"}')
        assert response.status_code == 404
        assert response.text == "Page Not Found"

    def test_create_organization(self, client, backends):
        response = client.post("/organizations", content=b'{"name":"Org Two"}')
        assert response.status_code == 204
        assert "new-1" in _keys(client, "organizations")

    def test_remove_organization_role(self, client):
        response = client.delete("/organizations/org-1/managers/user-1")
        assert response.status_code == 204
        keys = [tuple(row[3:5]) + (row[2],) for row in
                client.get("/organization_roles_view_model").json()["items"]["items"]]
        assert keys == [("org-1", "user-1", "User")]

    def test_delete_instance_removes_row(self, client):
        """测试：删除实例后无需等待下一次轮询"""
        response = client.delete("/applications/app-1/0")

        assert response.status_code == 204
        rows = client.get("/application_instances_view_model").json()["items"]["items"]
        assert [(row[1], row[2]) for row in rows] == [("app-1", 1)]

    def test_delete_shared_domain_uses_shared_endpoint(self, client, backends):
        assert client.delete("/domains/dom-2").status_code == 204
        assert backends.control_plane.mutations[0][:2] == ("DELETE", "/v2/shared_domains/dom-2")

    def test_delete_user_from_both_services(self, client, backends):
        response = client.delete("/users/user-1")

        assert response.status_code == 204
        assert backends.control_plane.mutations[0][:2] == ("DELETE", "/v2/users/user-1")
        assert backends.identity.deleted == ["/Users/user-1"]
        assert _keys(client, "users") == ["user-2"]

    def test_delete_identity_only_user(self, client, backends):
        assert client.delete("/users/user-2").status_code == 204
        assert backends.control_plane.mutations == []
        assert backends.identity.deleted == ["/Users/user-2"]

    def test_delete_service_instance_by_kind(self, client, backends):
        assert client.delete("/service_instances/upsi-1/false").status_code == 204
        assert backends.control_plane.mutations[0][:2] == ("DELETE", "/v2/user_provided_service_instances/upsi-1")
        assert _keys(client, "service_instances") == ["si-1"]

    def test_delete_component_locally(self, client, backends):
        response = client.delete("/components", params={"uri": "http://10.0.0.3:9024/varz"})

        assert response.status_code == 204
        assert backends.control_plane.mutations == []
        assert _keys(client, "routers") == []

    def test_delete_doppler_component_locally(self, client):
        response = client.delete("/doppler_components", params={"uri": "rep:0:10.0.0.5"})

        assert response.status_code == 204
        assert _keys(client, "cells") == []

    def test_delete_component_requires_uri(self, client):
        assert client.delete("/components").status_code == 400

    def test_unreachable_backend_is_503(self, client, backends):
        backends.control_plane.down = True
        response = client.put("/spaces/space-1", content=b'{"allow_ssh":false}')
        assert response.status_code == 503
        assert "control_plane" in response.json()["detail"]


class TestAdminToken:

    @pytest.fixture
    def secured(self, seeded):
        seeded.config.api.admin_token = "s3cret"
        return TestClient(create_app(seeded))

    def test_missing_token_is_rejected(self, secured, backends):
        response = secured.put("/organizations/org-1", content=b'{"name":"x"}')
        assert response.status_code == 401
        assert backends.control_plane.mutations == []

    def test_valid_token(self, secured):
        response = secured.put(
            "/organizations/org-1",
            content=json.dumps({"name": "x"}).encode(),
            headers={"X-Admin-Token": "s3cret"},
        )
        assert response.status_code == 204

    def test_reads_do_not_need_token(self, secured):
        assert secured.get("/organizations_view_model").status_code == 200
