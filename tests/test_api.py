"""Tests for the HTTP routes.

The application is built with a fake fetcher and directory, so no node
agent or Kubernetes API is contacted.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from epimetheus.agent.invoker import FetchResult
from epimetheus.config import ServiceConfig
from epimetheus.errors import AgentConnectionError, DirectoryError, RemoteCallError
from epimetheus.main import ClientDisconnected, create_app, until_disconnected
from epimetheus.models import ImageRecord, TimeRecord

AUTH = ("ghost", "s3cret")


@pytest.fixture
def config():
    return ServiceConfig(username="ghost", password="s3cret", talosconfig="/dev/null")


@pytest.fixture
def client(config, fake_fetcher, fake_directory):
    app = create_app(config=config, fetcher=fake_fetcher, directory=fake_directory)
    with TestClient(app) as test_client:
        yield test_client


class TestAnonymousRoutes:
    def test_ping(self, client):
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.json() == {"message": "pong"}

    def test_metrics(self, client):
        client.get("/ping")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "epimetheus_http_requests_total" in response.text

    def test_unknown_path(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {"message": "Page not found"}

    def test_wrong_method(self, client):
        response = client.post("/ping")
        assert response.status_code == 405
        assert response.json() == {"message": "Method not allowed"}


class TestAuthentication:
    def test_missing_credentials(self, client):
        response = client.get("/v1/service")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Basic"

    def test_wrong_password(self, client):
        response = client.get("/v1/service", auth=("ghost", "guess"))
        assert response.status_code == 401


class TestServiceRoutes:
    def test_healthy_services(self, client, fake_fetcher, service_factory):
        fake_fetcher.results["service_list"] = FetchResult([
            service_factory("apid", "cp-1"),
            service_factory("kubelet", "worker-1"),
        ])
        response = client.get("/v1/service", auth=AUTH)
        assert response.status_code == 200
        body = response.json()
        assert body["errors"] == []
        assert len(body["services"]) == 2
        # Every node is targeted
        assert fake_fetcher.calls[0] == (
            "service_list", ["10.0.0.10", "10.0.0.11", "10.0.0.20"]
        )

    def test_unhealthy_service_is_417(self, client, fake_fetcher, service_factory):
        fake_fetcher.results["service_list"] = FetchResult([
            service_factory("etcd", "cp-1", healthy=False),
        ])
        response = client.get("/v1/service", auth=AUTH)
        assert response.status_code == 417
        assert response.json()["errors"] == ["Service 'etcd' on cp-1 not healthy"]

    def test_fetch_failure_is_503(self, client, fake_fetcher):
        fake_fetcher.results["service_list"] = FetchResult(
            None, RemoteCallError("unavailable", operation="ServiceList")
        )
        response = client.get("/v1/service", auth=AUTH)
        assert response.status_code == 503
        assert "unavailable" in response.json()["error"]

    def test_partial_fetch_is_417_with_data(self, client, fake_fetcher, service_factory):
        fake_fetcher.results["service_list"] = FetchResult(
            [service_factory("apid", "cp-1")],
            RemoteCallError("cp-2: connection refused"),
        )
        response = client.get("/v1/service", auth=AUTH)
        assert response.status_code == 417
        body = response.json()
        assert len(body["services"]) == 1
        assert "connection refused" in body["errors"][0]

    def test_node_scoped(self, client, fake_fetcher):
        response = client.get("/v1/node/worker-1/service", auth=AUTH)
        assert response.status_code == 200
        assert fake_fetcher.calls[0] == ("service_list", ["10.0.0.20"])

    def test_unknown_node_is_404(self, client):
        response = client.get("/v1/node/nowhere/service", auth=AUTH)
        assert response.status_code == 404
        assert "nowhere" in response.json()["error"]

    def test_single_service(self, client, fake_fetcher, service_factory):
        fake_fetcher.results["service_info"] = FetchResult([service_factory("etcd", "cp-1")])
        response = client.get("/v1/service/etcd", auth=AUTH)
        assert response.status_code == 200
        assert response.json()["service"][0]["service_id"] == "etcd"
        assert fake_fetcher.calls[0][2] == "etcd"

    def test_unknown_service_is_503(self, client, fake_fetcher):
        fake_fetcher.results["service_info"] = FetchResult([])
        response = client.get("/v1/service/kubelt", auth=AUTH)
        assert response.status_code == 503
        assert "kubelt" in response.json()["error"]
        assert "not found" in response.json()["error"]

    def test_unmatched_service_with_failed_nodes_is_417(self, client, fake_fetcher):
        fake_fetcher.results["service_info"] = FetchResult(
            [], RemoteCallError("cp-2: connection refused")
        )
        response = client.get("/v1/service/etcd", auth=AUTH)
        assert response.status_code == 417
        assert response.json()["service"] == []

    def test_agent_unreachable_is_503(self, client, fake_fetcher):
        fake_fetcher.results["service_list"] = FetchResult(
            None, AgentConnectionError("client configuration unreadable")
        )
        assert client.get("/v1/service", auth=AUTH).status_code == 503


class TestEtcdRoutes:
    def test_status_targets_control_plane(self, client, fake_fetcher, member_factory):
        fake_fetcher.results["etcd_status"] = FetchResult([
            member_factory("cp-1"), member_factory("cp-2", member_id=2),
        ])
        response = client.get("/v1/etcd/status", auth=AUTH)
        assert response.status_code == 200
        assert fake_fetcher.calls[0] == ("etcd_status", ["10.0.0.10", "10.0.0.11"])

    def test_leader_disagreement(self, client, fake_fetcher, member_factory):
        fake_fetcher.results["etcd_status"] = FetchResult([
            member_factory("cp-1", leader_id=7),
            member_factory("cp-2", leader_id=3),
        ])
        response = client.get("/v1/etcd/status", auth=AUTH)
        assert response.status_code == 417
        assert len(response.json()["errors"]) == 1

    def test_min_db_size_override(self, client, fake_fetcher, member_factory):
        fake_fetcher.results["etcd_status"] = FetchResult([
            member_factory("cp-1", db_size=100 * 1024 ** 2, db_in_use=90 * 1024 ** 2),
        ])
        assert client.get("/v1/etcd/status", auth=AUTH).status_code == 200
        response = client.get("/v1/etcd/status?minDbSize=64MiB", auth=AUTH)
        assert response.status_code == 417

    def test_bad_min_db_size_is_400(self, client):
        response = client.get("/v1/etcd/status?minDbSize=big", auth=AUTH)
        assert response.status_code == 400

    def test_no_alarms(self, client, fake_fetcher):
        fake_fetcher.results["etcd_alarms"] = FetchResult([])
        response = client.get("/v1/etcd/alarms", auth=AUTH)
        assert response.status_code == 200
        assert response.json()["message"] == "No alarms present"

    def test_alarms_raised(self, client, fake_fetcher, alarm_factory):
        fake_fetcher.results["etcd_alarms"] = FetchResult([alarm_factory("cp-1", "NOSPACE")])
        response = client.get("/v1/etcd/alarms", auth=AUTH)
        assert response.status_code == 417
        assert response.json()["errors"] == ["Member cp-1 (abc) raised alarm NOSPACE"]


class TestPodRoutes:
    def test_static_filter(self, client, fake_fetcher, workload_factory):
        fake_fetcher.results["workload_list"] = FetchResult([
            workload_factory("coredns-abc", owner="ReplicaSet", ready=False, message="not yet"),
            workload_factory("kube-apiserver-cp-1", owner="Node"),
        ])
        all_pods = client.get("/v1/pod", auth=AUTH)
        assert all_pods.status_code == 417

        static_pods = client.get("/v1/pod?static=true", auth=AUTH)
        assert static_pods.status_code == 200
        assert [p["name"] for p in static_pods.json()["pods"]] == ["kube-apiserver-cp-1"]

    def test_node_and_namespace(self, client, fake_fetcher):
        client.get("/v1/node/cp-1/pod/kube-system", auth=AUTH)
        assert fake_fetcher.calls[0] == ("workload_list", "cp-1", "kube-system")


class TestNodeRoutes:
    def test_list_by_role(self, client):
        response = client.get("/v1/node?role=control-plane", auth=AUTH)
        assert response.status_code == 200
        assert [n["name"] for n in response.json()] == ["cp-1", "cp-2"]

    def test_node_conditions(self, client, fake_directory, node_conditions_factory):
        fake_directory.conditions["worker-1"] = node_conditions_factory(
            statuses={"Ready": "True", "DiskPressure": "True"}
        )
        response = client.get("/v1/node/worker-1", auth=AUTH)
        assert response.status_code == 417
        assert response.json()["errors"] == ["DiskPressure: DiskPressure is True"]

    def test_directory_down_is_503(self, client, fake_directory):
        fake_directory.error = DirectoryError("listing nodes failed: 500 Internal")
        response = client.get("/v1/node", auth=AUTH)
        assert response.status_code == 503


class TestImages:
    def test_inventory_is_always_ok(self, client, fake_fetcher):
        fake_fetcher.results["image_list"] = FetchResult(
            [ImageRecord(host_node="worker-1", name="pause", size_bytes=700_000, size="700 kB")],
            RemoteCallError("cp-2: stream reset"),
        )
        response = client.get("/v1/images", auth=AUTH)
        assert response.status_code == 200
        body = response.json()
        assert body["images"][0]["name"] == "pause"
        assert len(body["errors"]) == 1


class TestClientDisconnect:
    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_fetch_cancelled_when_client_leaves(self):
        cancelled = asyncio.Event()

        async def slow_fetch():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=True)

        with pytest.raises(ClientDisconnected):
            await until_disconnected(request, slow_fetch())
        await asyncio.wait_for(cancelled.wait(), 1)

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_result_returned_while_connected(self):
        async def fetch():
            return FetchResult(["record"])

        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=False)

        result = await until_disconnected(request, fetch())
        assert result.records == ["record"]


class TestTimeRoutes:
    def test_time_check(self, client, fake_fetcher):
        fake_fetcher.results["time_check"] = FetchResult([
            TimeRecord(host_node="cp-1", server="pool.ntp.org",
                       local_time="2023-11-14T22:13:20+00:00",
                       remote_time="2023-11-14T22:13:20+00:00"),
        ])
        response = client.get("/v1/time/pool.ntp.org", auth=AUTH)
        assert response.status_code == 200
        assert response.json()["time"][0]["server"] == "pool.ntp.org"
        # The endpoint's own node is asked
        assert fake_fetcher.calls[0] == ("time_check", "pool.ntp.org", [])

    def test_time_check_failure_is_503(self, client, fake_fetcher):
        fake_fetcher.results["time_check"] = FetchResult(
            None, RemoteCallError("local: ntp query timed out", operation="TimeCheck")
        )
        response = client.get("/v1/time/pool.ntp.org", auth=AUTH)
        assert response.status_code == 503
        assert "ntp query timed out" in response.json()["error"]


class TestNodeResources:
    def test_system_info(self, client, fake_fetcher):
        fake_fetcher.results["node_system_info"] = FetchResult(
            {"manufacturer": "Supermicro", "productName": "X11"}
        )
        response = client.get("/v1/node/worker-1/info", auth=AUTH)
        assert response.status_code == 200
        assert response.json() == {"manufacturer": "Supermicro", "productName": "X11"}
        assert fake_fetcher.calls[0] == ("node_system_info", "10.0.0.20")

    def test_platform_metadata(self, client, fake_fetcher):
        fake_fetcher.results["node_platform_metadata"] = FetchResult(
            {"platform": "metal", "hostname": "cp-1"}
        )
        response = client.get("/v1/node/cp-1/metadata", auth=AUTH)
        assert response.status_code == 200
        assert response.json()["platform"] == "metal"
        assert fake_fetcher.calls[0] == ("node_platform_metadata", "10.0.0.10")

    def test_unknown_node_is_404(self, client, fake_fetcher):
        response = client.get("/v1/node/nowhere/info", auth=AUTH)
        assert response.status_code == 404
        assert fake_fetcher.calls == []

    def test_fetch_failure_is_503(self, client, fake_fetcher):
        fake_fetcher.results["node_platform_metadata"] = FetchResult(
            None, RemoteCallError("Get PlatformMetadatas.talos.dev failed: NOT_FOUND")
        )
        response = client.get("/v1/node/cp-2/metadata", auth=AUTH)
        assert response.status_code == 503
        assert "NOT_FOUND" in response.json()["error"]
