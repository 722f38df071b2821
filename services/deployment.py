"""
Build and ship a sandbox's app to the deployment plane.

Flow:
1. Strip the dev-only monitor tag from index.html
2. `bun run build` (failures are fatal and never fall back)
3. Strategy A: zip the build dir and upload it with curl, retrying only
   when the plane resets the connection
4. Strategy B: a generated node script reads the build files and POSTs
   them as JSON to /api/deploy/direct
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from config import Settings, settings as default_settings
from models import ExecResult
from .database import ProjectStore
from .errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentFailureKind,
    ProviderError,
    TransportFailure,
)
from .monitor import has_monitor_tag, strip_monitor_tag
from .provider import WORKSPACE_ROOT, SandboxProvider, shell_quote

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration Constants
# =============================================================================

BUILD_COMMAND = f"cd {WORKSPACE_ROOT} && bun run build"
BUILD_TIMEOUT_S = 300
BUILD_DIR_CANDIDATES = ("dist", "build", "out")

UPLOAD_MAX_RETRIES = 2  # extra attempts, CONNECTION_CLOSED only
UPLOAD_RETRY_DELAY_S = 2
UPLOAD_CONNECT_TIMEOUT_S = 30
UPLOAD_MAX_TIME_S = 120
UPLOAD_EXEC_TIMEOUT_S = 180

DIRECT_DEPLOY_SCRIPT_PATH = "/tmp/shipper-deploy-direct.cjs"
DIRECT_DEPLOY_MAX_FILES = 500
DIRECT_DEPLOY_TIMEOUT_MS = 120000

STATUS_MARKER = "HTTP_STATUS_CODE:"
CONNECTION_CLOSED_MARKER = "Deployment validation failed: Error: closed"
CURL_TIMEOUT_EXIT_CODE = 28

URL_RE = re.compile(r"https?://[^\s\"'}<>]+")
TRAILING_JUNK_RE = re.compile(r"[\"}'\]]+$")
ASSET_URL_MARKERS = ("/static/", ".woff", ".css", ".js", ".png", ".jpg")
VENDOR_URL_MARKERS = ("cdn.ngrok.com", "ngrok.com/static/")
HTTPS_DOMAINS = (".deploy.shipper.now", ".deploy-staging.shipper.now")

BUILD_OUTPUT_RE = re.compile(r"Build output:\s*([\s\S]*?)(?=\n(?:Deployment|ERROR:|$))")


@dataclass
class DeploymentResult:
    success: bool
    deployment_url: Optional[str] = None
    error: Optional[str] = None
    logs: str = ""


# =============================================================================
# Pure helpers
# =============================================================================

def force_https(url: str) -> str:
    """Deployment plane hosts are served over TLS only."""
    if url.startswith("http://"):
        host = url[len("http://"):].split("/", 1)[0]
        if host.endswith(HTTPS_DOMAINS):
            return "https://" + url[len("http://"):]
    return url


def is_rejected_url(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in ASSET_URL_MARKERS + VENDOR_URL_MARKERS)


def build_failure_message(output: str) -> str:
    if "error TS" in output:
        errors = "\n".join(line for line in output.splitlines() if "error TS" in line)
        return f"Failed to build application - TypeScript errors:\n{errors}"
    return f"Failed to build application:\n{output.strip()}"


def extract_deployment_url(body: str) -> str:
    """
    Pull the deployment URL out of a deployment plane response.

    Raises DeploymentError classified as SERVER_ERROR, HTML_RESPONSE or NO_URL.
    """
    text = body.strip()

    try:
        data = json.loads(text)
    except ValueError:
        data = None

    if isinstance(data, dict):
        if data.get("error"):
            raise DeploymentError(
                f"Deployment failed: {data['error']}",
                transport_failure=TransportFailure.SERVER_ERROR,
            )
        for key in ("url", "deploymentUrl", "link"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return force_https(TRAILING_JUNK_RE.sub("", value))

    lowered = text.lower()
    if "<html" in lowered or "<!doctype" in lowered:
        raise DeploymentError(
            "Deployment endpoint returned HTML instead of JSON",
            transport_failure=TransportFailure.HTML_RESPONSE,
        )

    for candidate in URL_RE.findall(text):
        candidate = TRAILING_JUNK_RE.sub("", candidate)
        if not is_rejected_url(candidate):
            return force_https(candidate)

    raise DeploymentError(
        "No deployment URL found in response",
        transport_failure=TransportFailure.NO_URL,
    )


def split_curl_output(stdout: str) -> tuple[str, Optional[int]]:
    """Separate the response body from the trailing status marker."""
    body, marker, status = stdout.rpartition(STATUS_MARKER)
    if not marker:
        return stdout, None
    try:
        return body.rstrip("\n"), int(status.strip())
    except ValueError:
        return body.rstrip("\n"), None


def classify_upload(result: ExecResult) -> str:
    """
    Return the deployment URL from a curl upload, or raise a DeploymentError
    carrying the TransportFailure kind.
    """
    body, status = split_curl_output(result.stdout)

    if CONNECTION_CLOSED_MARKER in body or CONNECTION_CLOSED_MARKER in result.stderr:
        raise DeploymentError(
            "Deployment plane closed the connection",
            transport_failure=TransportFailure.CONNECTION_CLOSED,
            logs=result.output,
        )

    if result.exit_code == CURL_TIMEOUT_EXIT_CODE:
        raise DeploymentError(
            "Deployment upload timed out",
            transport_failure=TransportFailure.TIMEOUT,
            logs=result.output,
        )

    if not result.ok:
        raise DeploymentError(
            f"Upload command failed with exit code {result.exit_code}: {result.stderr.strip()}",
            transport_failure=TransportFailure.HTTP_ERROR,
            logs=result.output,
        )

    if status is not None and status >= 400:
        # A JSON error payload or HTML body keeps its own classification
        try:
            extract_deployment_url(body)
        except DeploymentError as e:
            if e.transport_failure in (TransportFailure.SERVER_ERROR, TransportFailure.HTML_RESPONSE):
                e.logs = body
                raise
        raise DeploymentError(
            f"Deployment plane responded with HTTP {status}",
            transport_failure=TransportFailure.HTTP_ERROR,
            logs=body,
        )

    return extract_deployment_url(body)


def filter_sensitive_logs(logs: str) -> str:
    """
    Reduce deployment logs to what is safe to show a user.

    When build output is present only that is kept. Otherwise URLs, app names
    and credentials are masked.
    """
    if not logs:
        return ""

    match = BUILD_OUTPUT_RE.search(logs)
    if match:
        return f"Build output:\n{match.group(1).strip()}"

    filtered = re.sub(r"Deployment URL: https?://\S+", "Deployment URL: [HIDDEN]", logs)
    filtered = re.sub(r"App Name: [^\n\r]+", "App Name: [HIDDEN]", filtered)
    filtered = re.sub(r"Bearer \S+", "Bearer [HIDDEN]", filtered, flags=re.IGNORECASE)
    filtered = re.sub(r"Authorization: [^\n\r]+", "Authorization: [HIDDEN]", filtered, flags=re.IGNORECASE)
    filtered = re.sub(r"https?://[^\s\[\]]+", "[URL_FILTERED]", filtered)
    return filtered


def zip_command(build_dir: str, archive: str) -> str:
    return f"cd {WORKSPACE_ROOT}/{build_dir} && zip -r {shell_quote(archive)} ."


def curl_upload_command(
    plane_url: str,
    api_key: str,
    project_id: str,
    app_name: str,
    archive: str,
) -> str:
    return (
        f"curl -s -X POST "
        f"--connect-timeout {UPLOAD_CONNECT_TIMEOUT_S} --max-time {UPLOAD_MAX_TIME_S} "
        f"-H 'bypass-tunnel-reminder: true' "
        f"-H {shell_quote(f'Authorization: Bearer {api_key}')} "
        f"-F {shell_quote(f'projectId={project_id}')} "
        f"-F {shell_quote(f'name={app_name}')} "
        f"-F {shell_quote(f'app=@{archive}')} "
        f"{shell_quote(plane_url.rstrip('/') + '/api/deploy')} "
        f"-w '\\n{STATUS_MARKER}%{{http_code}}'"
    )


_DIRECT_DEPLOY_TEMPLATE = """const fs = require("fs");
const path = require("path");
const http = require("http");
const https = require("https");

const CONFIG = __CONFIG__;
const BINARY_RE = /\\.(jpg|jpeg|png|gif|ico|svg|pdf|zip|tar|gz|mp4|mp3|woff|woff2|ttf|eot)$/i;

function walk(dir, out) {
  for (const entry of fs.readdirSync(dir, { withFileTypes: true })) {
    if (out.length >= CONFIG.maxFiles) return;
    const full = path.join(dir, entry.name);
    if (entry.isDirectory()) {
      if (entry.name === "node_modules" || entry.name === ".git") continue;
      walk(full, out);
    } else if (entry.isFile()) {
      out.push(full);
    }
  }
}

function main() {
  const root = path.resolve(CONFIG.workspace, CONFIG.buildDir);
  const paths = [];
  walk(root, paths);
  if (paths.length === 0) {
    console.log("ERROR: No files found to deploy");
    process.exit(1);
  }

  const files = [];
  for (const full of paths) {
    const relative = path.relative(root, full);
    try {
      const content = fs.readFileSync(full);
      const binary = BINARY_RE.test(relative);
      files.push({
        path: relative,
        content: binary ? content.toString("base64") : content.toString("utf8"),
        encoding: binary ? "base64" : "utf8",
      });
    } catch (err) {
      console.log("WARN: Failed to read " + relative + ": " + err.message);
    }
  }

  const payload = JSON.stringify({ projectId: CONFIG.projectId, name: CONFIG.appName, files });
  const url = new URL(CONFIG.planeUrl + "/api/deploy/direct");
  const client = url.protocol === "https:" ? https : http;
  const req = client.request(
    {
      hostname: url.hostname,
      port: url.port || (url.protocol === "https:" ? 443 : 80),
      path: url.pathname,
      method: "POST",
      timeout: CONFIG.timeoutMs,
      headers: {
        "Content-Type": "application/json",
        "Content-Length": Buffer.byteLength(payload),
        "User-Agent": "Shipper-Sandbox-Deployer/1.0",
        "bypass-tunnel-reminder": "true",
        Authorization: "Bearer " + CONFIG.apiKey,
      },
    },
    (res) => {
      let data = "";
      res.on("data", (chunk) => (data += chunk));
      res.on("end", () => {
        if (res.statusCode >= 200 && res.statusCode < 300) {
          console.log("SUCCESS: " + data);
          process.exit(0);
        }
        console.log("ERROR: HTTP " + res.statusCode + " " + data);
        process.exit(1);
      });
    }
  );
  req.on("timeout", () => {
    console.log("ERROR: Request timed out");
    req.destroy();
    process.exit(1);
  });
  req.on("error", (err) => {
    console.log("ERROR: " + err.message);
    process.exit(1);
  });
  req.write(payload);
  req.end();
}

main();
"""


def direct_deploy_script(
    plane_url: str,
    api_key: str,
    project_id: str,
    app_name: str,
    build_dir: str,
) -> str:
    config = {
        "planeUrl": plane_url.rstrip("/"),
        "apiKey": api_key,
        "projectId": project_id,
        "appName": app_name,
        "buildDir": build_dir,
        "workspace": WORKSPACE_ROOT,
        "maxFiles": DIRECT_DEPLOY_MAX_FILES,
        "timeoutMs": DIRECT_DEPLOY_TIMEOUT_MS,
    }
    return _DIRECT_DEPLOY_TEMPLATE.replace("__CONFIG__", json.dumps(config))


def parse_direct_output(result: ExecResult) -> str:
    for line in result.stdout.splitlines():
        if line.startswith("SUCCESS: "):
            return extract_deployment_url(line[len("SUCCESS: "):])

    errors = [line for line in result.output.splitlines() if line.startswith("ERROR:")]
    message = errors[-1][len("ERROR:"):].strip() if errors else f"exit code {result.exit_code}"
    raise DeploymentError(
        f"Direct deployment failed: {message}",
        transport_failure=TransportFailure.HTTP_ERROR,
        logs=result.output,
    )


# =============================================================================
# Pipeline
# =============================================================================

class DeploymentPipeline:
    """Builds inside the sandbox and uploads the output to the deployment plane."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: ProjectStore,
        config: Optional[Settings] = None,
        retry_delay_s: float = UPLOAD_RETRY_DELAY_S,
    ):
        self.provider = provider
        self.store = store
        self.config = config or default_settings
        self.retry_delay_s = retry_delay_s

    def _require_config(self) -> tuple[str, str]:
        if not self.config.deployment_plane_url:
            raise ConfigurationError("DEPLOYMENT_PLANE_URL is not configured")
        if not self.config.deployment_plane_api_key:
            raise ConfigurationError("DEPLOYMENT_PLANE_API_KEY is not configured")
        return self.config.deployment_plane_url, self.config.deployment_plane_api_key

    async def deploy(
        self,
        sandbox_id: str,
        project_id: str,
        app_name: Optional[str] = None,
        fragment_id: Optional[str] = None,
    ) -> DeploymentResult:
        """
        Build and upload. Build failures raise DeploymentError(kind=BUILD);
        transport failures of both strategies are returned as success=False.
        """
        plane_url, api_key = self._require_config()
        name = app_name or f"shipper-app-{project_id}"
        logs: list[str] = []

        await self._strip_monitor(sandbox_id)

        build_output = await self._build(sandbox_id)
        logs.append(f"Build output:\n{build_output}")

        build_dir = await self._detect_build_dir(sandbox_id)
        logger.info(f"[Deployment] Using build directory '{build_dir}' for {project_id}")

        try:
            deployment_url = await self._upload_archive(sandbox_id, plane_url, api_key, project_id, name, build_dir)
        except DeploymentError as e:
            if e.is_build_failure:
                raise
            logger.warning(
                f"[Deployment] Archive upload failed ({e.transport_failure}), falling back to direct upload: {e.message}"
            )
            logs.append(f"ERROR: {e.message}")
            try:
                deployment_url = await self._upload_direct(sandbox_id, plane_url, api_key, project_id, name, build_dir)
            except DeploymentError as fallback_error:
                logger.error(f"[Deployment] Direct upload failed for {project_id}: {fallback_error.message}")
                logs.append(f"ERROR: {fallback_error.message}")
                if fallback_error.logs:
                    logs.append(fallback_error.logs)
                return DeploymentResult(
                    success=False,
                    error=fallback_error.message,
                    logs=filter_sensitive_logs("\n".join(logs)),
                )

        if fragment_id is None:
            project = await self.store.get_project(project_id)
            fragment_id = project.active_fragment_id if project else None

        await self.store.record_deployment(project_id, deployment_url, fragment_id)
        logger.info(f"[Deployment] Deployed {project_id} to {deployment_url}")
        logs.append(f"Deployment URL: {deployment_url}")

        return DeploymentResult(
            success=True,
            deployment_url=deployment_url,
            logs=filter_sensitive_logs("\n".join(logs)),
        )

    async def _strip_monitor(self, sandbox_id: str) -> None:
        path = f"{WORKSPACE_ROOT}/index.html"
        try:
            html = await self.provider.read_text(sandbox_id, path)
            if has_monitor_tag(html):
                await self.provider.write_text(sandbox_id, path, strip_monitor_tag(html))
                logger.info(f"[Deployment] Removed monitor script from index.html in {sandbox_id}")
        except ProviderError as e:
            logger.warning(f"[Deployment] Could not strip monitor script in {sandbox_id}: {e}")

    async def _build(self, sandbox_id: str) -> str:
        try:
            result = await self.provider.exec(sandbox_id, BUILD_COMMAND, timeout=BUILD_TIMEOUT_S)
        except ProviderError as e:
            raise DeploymentError(
                f"Failed to build application:\n{e.message}",
                kind=DeploymentFailureKind.BUILD,
                sandbox_id=sandbox_id,
            ) from e

        if not result.ok:
            message = build_failure_message(result.output)
            logger.error(f"[Deployment] Build failed in {sandbox_id}")
            raise DeploymentError(
                message,
                kind=DeploymentFailureKind.BUILD,
                logs=result.output,
                sandbox_id=sandbox_id,
            )
        return result.output.strip()

    async def _detect_build_dir(self, sandbox_id: str) -> str:
        for candidate in BUILD_DIR_CANDIDATES:
            try:
                result = await self.provider.exec(sandbox_id, f"test -d {WORKSPACE_ROOT}/{candidate}")
            except ProviderError as e:
                logger.warning(f"[Deployment] Could not check build dir {candidate} in {sandbox_id}: {e}")
                continue
            if result.ok:
                return candidate
        return "."

    async def _upload_archive(
        self,
        sandbox_id: str,
        plane_url: str,
        api_key: str,
        project_id: str,
        app_name: str,
        build_dir: str,
    ) -> str:
        """Strategy A: zip and upload with curl."""
        archive = f"/tmp/{app_name}.zip"
        try:
            zipped = await self.provider.exec(sandbox_id, zip_command(build_dir, archive))
            if not zipped.ok:
                raise DeploymentError(
                    f"Failed to archive build output: {zipped.stderr.strip()}",
                    transport_failure=TransportFailure.HTTP_ERROR,
                    logs=zipped.output,
                )

            command = curl_upload_command(plane_url, api_key, project_id, app_name, archive)
            for attempt in range(UPLOAD_MAX_RETRIES + 1):
                result = await self.provider.exec(sandbox_id, command, timeout=UPLOAD_EXEC_TIMEOUT_S)
                try:
                    return classify_upload(result)
                except DeploymentError as e:
                    if not e.is_transient or attempt >= UPLOAD_MAX_RETRIES:
                        raise
                    logger.warning(
                        f"[Deployment] Connection closed on upload attempt {attempt + 1}, "
                        f"retrying in {self.retry_delay_s}s"
                    )
                    await asyncio.sleep(self.retry_delay_s)

            raise DeploymentError("Upload retries exhausted", transport_failure=TransportFailure.CONNECTION_CLOSED)
        except ProviderError as e:
            raise DeploymentError(
                f"Upload command failed: {e.message}",
                transport_failure=TransportFailure.HTTP_ERROR,
                sandbox_id=sandbox_id,
            ) from e
        finally:
            await self._remove(sandbox_id, archive)

    async def _upload_direct(
        self,
        sandbox_id: str,
        plane_url: str,
        api_key: str,
        project_id: str,
        app_name: str,
        build_dir: str,
    ) -> str:
        """Strategy B: node script posting file contents as JSON."""
        script = direct_deploy_script(plane_url, api_key, project_id, app_name, build_dir)
        try:
            await self.provider.write_text(sandbox_id, DIRECT_DEPLOY_SCRIPT_PATH, script)
            result = await self.provider.exec(
                sandbox_id,
                f"cd {WORKSPACE_ROOT} && node {DIRECT_DEPLOY_SCRIPT_PATH}",
                timeout=UPLOAD_EXEC_TIMEOUT_S,
            )
        except ProviderError as e:
            raise DeploymentError(
                f"Direct deployment failed: {e.message}",
                transport_failure=TransportFailure.HTTP_ERROR,
                sandbox_id=sandbox_id,
            ) from e
        finally:
            await self._remove(sandbox_id, DIRECT_DEPLOY_SCRIPT_PATH)

        return parse_direct_output(result)

    async def _remove(self, sandbox_id: str, path: str) -> None:
        try:
            await self.provider.exec(sandbox_id, f"rm -f {shell_quote(path)}")
        except ProviderError as e:
            logger.debug(f"[Deployment] Failed to remove {path}: {e}")
