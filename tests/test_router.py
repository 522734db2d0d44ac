import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import manifest
from hangar.addons.store.router import get_store_service, router


@pytest.fixture
def client(svc):
    app = FastAPI()
    app.include_router(router, prefix="/api/addons")
    app.dependency_overrides[get_store_service] = lambda: svc
    with TestClient(app) as c:
        yield c


class TestStoreRoutes:
    def test_list_and_search(self, client):
        resp = client.get("/api/addons/store")
        assert resp.status_code == 200
        body = resp.json()
        assert [e["addon"]["id"] for e in body["addons"]] == ["airport", "livery"]
        assert body["catalog"]["mode"] == "online"

        resp = client.get("/api/addons/store", params={"q": "airport"})
        assert [e["addon"]["id"] for e in resp.json()["addons"]] == ["airport"]

    def test_unknown_addon_is_404(self, client):
        assert client.get("/api/addons/store/nope").status_code == 404

    def test_catalog_status_and_reload(self, client):
        status = client.get("/api/addons/catalog").json()
        assert status["addons_count"] == 2
        resp = client.post("/api/addons/catalog/reload")
        assert resp.status_code == 200
        assert resp.json()["loaded"] is True


class TestInstallRoutes:
    def test_install_then_progress(self, client, install_dir):
        assert client.get("/api/addons/store/progress/airport").status_code == 404

        resp = client.post("/api/addons/store/install", json={"addon_id": "airport", "channel": "stable"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "installed"
        assert (install_dir / "Airport" / "manifest.json").exists()
        progress = client.get("/api/addons/store/progress/airport").json()
        assert progress["phase"] == "done"
        assert progress["overall_percent"] == 100

    def test_channel_conflict_is_409(self, client):
        client.post("/api/addons/store/install", json={"addon_id": "airport"})

        resp = client.post("/api/addons/store/install", json={"addon_id": "airport", "channel": "beta"})

        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["error_code"] == "channel_conflict"
        assert detail["details"]["installed_channel"] == "stable"

    def test_failed_install_is_reported_in_body(self, client):
        resp = client.post("/api/addons/store/install", json={"addon_id": "livery"})
        assert resp.status_code == 200
        assert resp.json()["error_code"] == "checksum_mismatch"

    def test_unknown_addon_and_missing_channel(self, client):
        assert client.post("/api/addons/store/install", json={"addon_id": "nope"}).status_code == 404
        resp = client.post("/api/addons/store/install", json={"addon_id": "livery", "channel": "beta"})
        assert resp.status_code == 404

    def test_missing_install_path_is_400(self, client):
        client.patch("/api/addons/settings", json={"community_path": ""})
        resp = client.post("/api/addons/store/install", json={"addon_id": "airport"})
        assert resp.status_code == 400

    def test_uninstall(self, client, install_dir):
        client.post("/api/addons/store/install", json={"addon_id": "airport"})
        resp = client.post("/api/addons/store/uninstall", json={"addon_id": "airport"})
        assert resp.json()["status"] == "uninstalled"
        assert not (install_dir / "Airport").exists()
        assert client.post("/api/addons/store/uninstall", json={"addon_id": "airport"}).status_code == 404


class TestStateRoutes:
    def test_reconcile_and_state(self, client, install_dir):
        (install_dir / "Airport").mkdir()
        (install_dir / "Airport" / "manifest.json").write_text(manifest("1.0.0"))

        resp = client.post("/api/addons/store/reconcile")

        assert resp.json()["installed"]["airport"]["installed_channel"] == "stable"
        state = client.get("/api/addons/state").json()
        assert state["settings"]["community_path"] == str(install_dir)
        assert list(state["installed"]) == ["airport"]

    def test_settings_patch(self, client, tmp_path):
        resp = client.patch(
            "/api/addons/settings",
            json={"install_path": str(tmp_path), "install_path_mode": "custom"},
        )
        assert resp.status_code == 200
        assert resp.json()["install_path"] == str(tmp_path)
        assert client.patch("/api/addons/settings", json={"bogus": 1}).status_code == 422

    def test_install_path_check(self, client, install_dir):
        body = client.post("/api/addons/settings/install-path/test").json()
        assert body == {"path": str(install_dir), "exists": True, "writable": True, "error": None}

    def test_disk_space(self, client, install_dir):
        body = client.get("/api/addons/system/diskspace").json()
        assert body["path"] == str(install_dir)
        assert body["free_bytes"] == 10**13
