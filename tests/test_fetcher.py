import pytest
import requests

from conftest import FakeResponse, FakeSession, sha256_hex
from hangar.addons.domain.errors import DownloadError, IntegrityError
from hangar.addons.services.fetcher import download_to_file, validate_download_url
from hangar.addons.services.integrity import sha256_file, verify_sha256

URL = "https://cdn.example.com/pkg.zip"


class TestValidateUrl:
    @pytest.mark.parametrize("url", ["", None, "ftp://x/y.zip", "file:///etc/passwd", "https://", "pkg.zip"])
    def test_rejects_non_http(self, url):
        with pytest.raises(DownloadError):
            validate_download_url(url)

    def test_accepts_https(self):
        assert validate_download_url("  https://a.example/b.zip ") == "https://a.example/b.zip"


class TestDownload:
    def test_streams_body_and_reports_progress(self, tmp_path):
        body = b"x" * 2500
        session = FakeSession({URL: FakeResponse(body, headers={"content-length": "2500"}, chunk_size=1000)})
        seen = []

        out = download_to_file(URL, tmp_path / "a.zip", session=session, on_progress=lambda t, n: seen.append((t, n)))

        assert out.read_bytes() == body
        assert seen == [(1000, 2500), (2000, 2500), (2500, 2500)]
        assert session.calls[0][1]["stream"] is True

    def test_unknown_length_reports_none_total(self, tmp_path):
        session = FakeSession({URL: FakeResponse(b"abc")})
        seen = []
        download_to_file(URL, tmp_path / "a.zip", session=session, on_progress=lambda t, n: seen.append(n))
        assert seen and all(n is None for n in seen)

    def test_non_2xx_raises(self, tmp_path):
        session = FakeSession({URL: FakeResponse(b"nope", status_code=503)})
        with pytest.raises(DownloadError) as exc:
            download_to_file(URL, tmp_path / "a.zip", session=session)
        assert exc.value.status_code == 503
        assert exc.value.code == "download_failed"

    def test_transport_error_is_wrapped(self, tmp_path):
        class Boom(FakeSession):
            def get(self, url, **kwargs):
                raise requests.ConnectionError("connection refused")

        with pytest.raises(DownloadError) as exc:
            download_to_file(URL, tmp_path / "a.zip", session=Boom())
        assert isinstance(exc.value.__cause__, requests.ConnectionError)

    def test_invalid_url_never_touches_network(self, tmp_path):
        session = FakeSession()
        with pytest.raises(DownloadError):
            download_to_file("ftp://x/y.zip", tmp_path / "a.zip", session=session)
        assert session.calls == []


class TestIntegrity:
    def test_match_is_case_insensitive(self, tmp_path):
        p = tmp_path / "f.bin"
        p.write_bytes(b"hello")
        digest = sha256_hex(b"hello")
        assert sha256_file(p) == digest
        assert verify_sha256(p, "  " + digest.upper() + "\n") == digest

    def test_mismatch_raises(self, tmp_path):
        p = tmp_path / "f.bin"
        p.write_bytes(b"hello")
        with pytest.raises(IntegrityError) as exc:
            verify_sha256(p, "0" * 64, addon_id="demo")
        assert exc.value.details()["actual"] == sha256_hex(b"hello")
        assert "demo" in str(exc.value)
