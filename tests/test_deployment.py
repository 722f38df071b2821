"""Tests for the deployment pipeline."""

import pytest

from config import Settings
from models import ExecResult
from services.deployment import (
    CONNECTION_CLOSED_MARKER,
    DIRECT_DEPLOY_SCRIPT_PATH,
    STATUS_MARKER,
    DeploymentPipeline,
    classify_upload,
    direct_deploy_script,
    extract_deployment_url,
    filter_sensitive_logs,
    force_https,
)
from services.errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentFailureKind,
    ProviderError,
    TransportFailure,
)
from services.monitor import MONITOR_SCRIPT_TAG

PLANE_URL = "https://deploy.example.com"
API_KEY = "sk-deploy-secret"


def deploy_settings(**overrides):
    values = {"deployment_plane_url": PLANE_URL, "deployment_plane_api_key": API_KEY}
    values.update(overrides)
    return Settings(**values)


def curl_ok(body: str, status: int = 200) -> ExecResult:
    return ExecResult(f"{body}\n{STATUS_MARKER}{status}", "", 0)


@pytest.fixture
def app_sandbox(provider, store):
    sandbox = provider.add_sandbox("sb-1", {
        "index.html": f"<html><head>{MONITOR_SCRIPT_TAG}</head><body></body></html>",
        "dist/index.html": "<html></html>",
    })
    store.add_project("p1", sandbox_id="sb-1", active_fragment_id="frag-active")
    return sandbox


@pytest.fixture
def pipeline(provider, store):
    return DeploymentPipeline(provider, store, config=deploy_settings(), retry_delay_s=0)


class TestUrlHandling:
    """Response parsing and URL filtering."""

    def test_json_url(self):
        assert extract_deployment_url('{"url": "https://app.deploy.shipper.now"}') == "https://app.deploy.shipper.now"

    def test_alternate_json_keys(self):
        assert extract_deployment_url('{"deploymentUrl": "https://a.example.com"}') == "https://a.example.com"
        assert extract_deployment_url('{"link": "https://b.example.com"}') == "https://b.example.com"

    def test_json_error_payload(self):
        with pytest.raises(DeploymentError) as exc_info:
            extract_deployment_url('{"error": "quota exceeded"}')
        assert exc_info.value.transport_failure == TransportFailure.SERVER_ERROR
        assert "quota exceeded" in exc_info.value.message

    def test_html_response(self):
        with pytest.raises(DeploymentError) as exc_info:
            extract_deployment_url("<!DOCTYPE html><html><body>Bad gateway</body></html>")
        assert exc_info.value.transport_failure == TransportFailure.HTML_RESPONSE
        assert exc_info.value.message == "Deployment endpoint returned HTML instead of JSON"

    def test_asset_and_vendor_urls_rejected(self):
        body = (
            "see https://cdn.ngrok.com/static/fonts.woff and https://x.example.com/main.css "
            "then https://my-app.deploy.shipper.now"
        )
        assert extract_deployment_url(body) == "https://my-app.deploy.shipper.now"

    def test_no_url(self):
        with pytest.raises(DeploymentError) as exc_info:
            extract_deployment_url("all done")
        assert exc_info.value.transport_failure == TransportFailure.NO_URL

    def test_force_https_only_for_plane_domains(self):
        assert force_https("http://app.deploy.shipper.now/x") == "https://app.deploy.shipper.now/x"
        assert force_https("http://app.deploy-staging.shipper.now") == "https://app.deploy-staging.shipper.now"
        assert force_https("http://example.com") == "http://example.com"

    def test_trailing_json_junk_stripped(self):
        assert extract_deployment_url('ok: "https://a.deploy.shipper.now"}') == "https://a.deploy.shipper.now"


class TestClassifyUpload:
    """Curl results map to transport failure kinds."""

    def test_connection_closed(self):
        result = ExecResult(f"{CONNECTION_CLOSED_MARKER}\n{STATUS_MARKER}500", "", 0)
        with pytest.raises(DeploymentError) as exc_info:
            classify_upload(result)
        assert exc_info.value.transport_failure == TransportFailure.CONNECTION_CLOSED
        assert exc_info.value.is_transient

    def test_curl_timeout(self):
        with pytest.raises(DeploymentError) as exc_info:
            classify_upload(ExecResult("", "Operation timed out", 28))
        assert exc_info.value.transport_failure == TransportFailure.TIMEOUT
        assert not exc_info.value.is_transient

    def test_http_error_status(self):
        with pytest.raises(DeploymentError) as exc_info:
            classify_upload(curl_ok("Service Unavailable", 503))
        assert exc_info.value.transport_failure == TransportFailure.HTTP_ERROR

    def test_success(self):
        assert classify_upload(curl_ok('{"url": "https://a.deploy.shipper.now"}')) == "https://a.deploy.shipper.now"


class TestFilterSensitiveLogs:
    """User-visible logs never leak credentials or internal URLs."""

    def test_build_output_kept_alone(self):
        logs = "Build output:\nvite v5 building...\n✓ built in 2s\nDeployment URL: https://secret.example.com"
        filtered = filter_sensitive_logs(logs)
        assert filtered.startswith("Build output:")
        assert "built in 2s" in filtered
        assert "secret.example.com" not in filtered

    def test_masks_secrets_without_build_output(self):
        logs = (
            "App Name: shipper-app-p1\n"
            "Authorization: Bearer sk-123\n"
            "POST https://internal.example.com/api/deploy"
        )
        filtered = filter_sensitive_logs(logs)
        assert "shipper-app-p1" not in filtered
        assert "sk-123" not in filtered
        assert "internal.example.com" not in filtered
        assert "[URL_FILTERED]" in filtered

    def test_empty(self):
        assert filter_sensitive_logs("") == ""


class TestDirectDeployScript:
    """Generated node script for the JSON upload strategy."""

    def test_config_embedded(self):
        script = direct_deploy_script(PLANE_URL + "/", API_KEY, "p1", "my-app", "dist")
        assert '"planeUrl": "https://deploy.example.com"' in script
        assert '"buildDir": "dist"' in script
        assert "__CONFIG__" not in script
        assert "/api/deploy/direct" in script


class TestDeploymentPipeline:
    """End-to-end pipeline against the fake provider."""

    @pytest.mark.asyncio
    async def test_successful_archive_upload(self, provider, store, app_sandbox, pipeline):
        provider.script("curl -s -X POST", curl_ok('{"url": "http://my-app.deploy.shipper.now"}'))

        result = await pipeline.deploy("sb-1", "p1")

        assert result.success is True
        assert result.deployment_url == "https://my-app.deploy.shipper.now"
        assert store.projects["p1"].deployment_url == "https://my-app.deploy.shipper.now"
        assert store.projects["p1"].deployed_fragment_id == "frag-active"
        assert MONITOR_SCRIPT_TAG not in app_sandbox.text("/workspace/index.html")
        assert provider.commands("cd /workspace/dist && zip -r")
        assert provider.commands("rm -f '/tmp/shipper-app-p1.zip'")
        assert provider.commands("&& node") == []

    @pytest.mark.asyncio
    async def test_build_failure_never_falls_back(self, provider, store, app_sandbox, pipeline):
        provider.script(
            "bun run build",
            ExecResult("src/App.tsx(3,7): error TS2322: Type 'string' is not assignable\nvite build failed", "", 1),
        )

        with pytest.raises(DeploymentError) as exc_info:
            await pipeline.deploy("sb-1", "p1")

        error = exc_info.value
        assert error.kind == DeploymentFailureKind.BUILD
        assert error.is_build_failure
        assert "TypeScript errors" in error.message
        assert "error TS2322" in error.message
        assert "vite build failed" not in error.message
        assert provider.commands("curl") == []
        assert provider.commands("&& node") == []
        assert store.projects["p1"].deployment_url is None

    @pytest.mark.asyncio
    async def test_transport_failure_falls_back_to_direct(self, provider, store, app_sandbox, pipeline):
        provider.script("curl -s -X POST", ExecResult("", "Could not resolve host", 6))
        provider.script("&& node", ExecResult('SUCCESS: {"url": "https://direct.deploy.shipper.now"}\n', "", 0))

        result = await pipeline.deploy("sb-1", "p1", fragment_id="frag-explicit")

        assert result.success is True
        assert result.deployment_url == "https://direct.deploy.shipper.now"
        assert len(provider.commands("curl -s -X POST")) == 1
        assert store.projects["p1"].deployed_fragment_id == "frag-explicit"
        # script is removed after running
        assert DIRECT_DEPLOY_SCRIPT_PATH not in app_sandbox.files

    @pytest.mark.asyncio
    async def test_connection_closed_is_retried(self, provider, store, app_sandbox, pipeline):
        closed = ExecResult(f"{CONNECTION_CLOSED_MARKER}\n{STATUS_MARKER}500", "", 0)
        provider.script(
            "curl -s -X POST",
            closed,
            closed,
            curl_ok('{"url": "https://retry.deploy.shipper.now"}'),
        )

        result = await pipeline.deploy("sb-1", "p1")

        assert result.success is True
        assert len(provider.commands("curl -s -X POST")) == 3
        assert provider.commands("&& node") == []

    @pytest.mark.asyncio
    async def test_both_strategies_failing_returns_result(self, provider, store, app_sandbox, pipeline):
        provider.script("curl -s -X POST", curl_ok("<html>502 Bad Gateway</html>", 502))
        provider.script("&& node", ExecResult("ERROR: HTTP 500 upstream\n", "", 1))

        result = await pipeline.deploy("sb-1", "p1")

        assert result.success is False
        assert "HTTP 500 upstream" in result.error
        assert "deploy.example.com" not in result.logs
        assert store.projects["p1"].deployment_url is None

    @pytest.mark.asyncio
    async def test_build_dir_falls_back_to_workspace(self, provider, store, pipeline):
        provider.add_sandbox("sb-1", {"index.html": "<html></html>"})
        store.add_project("p1", sandbox_id="sb-1")
        provider.script("curl -s -X POST", curl_ok('{"url": "https://a.deploy.shipper.now"}'))

        await pipeline.deploy("sb-1", "p1")

        assert provider.commands("cd /workspace/. && zip -r")

    @pytest.mark.asyncio
    async def test_build_dir_check_errors_fall_back_to_workspace(self, provider, store, pipeline):
        provider.add_sandbox("sb-1", {"index.html": "<html></html>"})
        store.add_project("p1", sandbox_id="sb-1")
        provider.script("test -d", ProviderError("exec stream reset"))
        provider.script("curl -s -X POST", curl_ok('{"url": "https://a.deploy.shipper.now"}'))

        result = await pipeline.deploy("sb-1", "p1")

        assert result.success
        assert len(provider.commands("test -d")) == 3
        assert provider.commands("cd /workspace/. && zip -r")

    @pytest.mark.asyncio
    async def test_missing_configuration(self, provider, store, app_sandbox):
        pipeline = DeploymentPipeline(provider, store, config=deploy_settings(deployment_plane_url=None))

        with pytest.raises(ConfigurationError):
            await pipeline.deploy("sb-1", "p1")

        assert provider.exec_log == []
