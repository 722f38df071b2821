"""
Template Snapshot Builder

Builds the sandbox image for a project template and freezes it into a Modal
filesystem snapshot. The resulting image id goes into TEMPLATE_SNAPSHOTS
(services/templates.py) so new sandboxes boot with the template's code and
node_modules already in place.

Each template is a branch of the template repository. The image:
- starts from oven/bun:1 (same base image as a bare sandbox)
- clones the template branch into /workspace as a fresh git repository
- runs bun install
- pins Vite's dependency scan entries to avoid runtime re-optimization

Build a snapshot:
    modal run modal_image.py --template database-vite-template

Build for the dev environment:
    modal run modal_image.py --template database-vite-template --environment dev

Private template repositories need GITHUB_TOKEN in the local environment.
"""

import os
from datetime import date

import modal

from services.provider import BASE_IMAGE, WORKSPACE_ROOT

app = modal.App("shipper-template-snapshots")

DEFAULT_TEMPLATE_REPO = "https://github.com/Shipper-dot-now/vite-template"


def authenticated_repo_url(repo: str, token: str | None) -> str:
    """Embed a GitHub token in an https clone URL."""
    if not token or not repo.startswith("https://"):
        return repo
    return repo.replace("https://", f"https://x-access-token:{token}@", 1)


def template_image(repo: str, branch: str) -> modal.Image:
    """Image with the template checked out and dependencies installed."""
    clone_url = authenticated_repo_url(repo, os.environ.get("GITHUB_TOKEN"))

    return (
        modal.Image.from_registry(BASE_IMAGE)

        # =====================================================================
        # Layer 1: git
        # =====================================================================
        .dockerfile_commands([
            "RUN apt-get update && apt-get install -y git zip curl",
            f"RUN mkdir -p {WORKSPACE_ROOT}",
        ])

        # =====================================================================
        # Layer 2: Template checkout as a fresh repository
        # =====================================================================
        .dockerfile_commands([
            f'RUN git clone --branch "{branch}" --single-branch --depth 1 "{clone_url}" {WORKSPACE_ROOT}',
            f"WORKDIR {WORKSPACE_ROOT}",
            "RUN rm -rf .git",
            "RUN git init",
            'RUN git config user.name "Shipper AI"',
            'RUN git config user.email "ai@shipper.dev"',
            "RUN git add .",
            'RUN git commit -m "Initial commit from template"',
            "RUN git branch -M main",
        ])

        # =====================================================================
        # Layer 3: Dependencies
        # =====================================================================
        .dockerfile_commands(["RUN bun install"])

        # =====================================================================
        # Layer 4: Vite dependency scan entries
        # =====================================================================
        .dockerfile_commands([
            "RUN rm -rf node_modules/.vite .vite",
            "RUN grep -q 'entries:' vite.config.ts || "
            "sed -i '/optimizeDeps: {/a\\    entries: [\"index.html\", \"src/**/*.{ts,tsx,js,jsx}\"],' vite.config.ts",
        ])

        .env({"NODE_ENV": "development"})
    )


def build_snapshot(template: str, repo: str) -> str:
    """Boot a sandbox from the template image, verify it and snapshot it."""
    image = template_image(repo, template)

    print(f"Creating sandbox for template '{template}' from {repo}...")
    sandbox = modal.Sandbox.create(
        app=app,
        image=image,
        workdir=WORKSPACE_ROOT,
        cpu=1,
        memory=2048,
        timeout=1800,
    )

    try:
        listing = sandbox.exec("ls", "-la", WORKSPACE_ROOT)
        contents = listing.stdout.read()
        listing.wait()
        print(contents)

        if "package.json" in contents:
            print("[PASS] Workspace contains package.json")
        else:
            print("[WARN] package.json not found in workspace")

        git_status = sandbox.exec("git", "status", workdir=WORKSPACE_ROOT)
        if git_status.wait() == 0:
            print("[PASS] Git repository initialized")
        else:
            print("[WARN] Git repository verification failed")

        print("Creating filesystem snapshot...")
        snapshot = sandbox.snapshot_filesystem()
        return snapshot.object_id
    finally:
        sandbox.terminate()


@app.local_entrypoint()
def main(template: str, repo: str = DEFAULT_TEMPLATE_REPO, environment: str = "main"):
    """Build one template snapshot and print its registry entry."""
    if environment not in ("main", "dev"):
        raise SystemExit(f"Unknown environment '{environment}', expected 'main' or 'dev'")

    image_id = build_snapshot(template, repo)
    field = "dev_image_id" if environment == "dev" else "image_id"

    print("=" * 60)
    print(f"Snapshot created for {template} ({environment})")
    print(f"Image ID: {image_id}")
    print("=" * 60)
    print("")
    print("Update services/templates.py:")
    print(f'  "{template}": TemplateSnapshot(')
    print(f'      {field}="{image_id}",')
    print(f'      created_at="{date.today().isoformat()}",')
    print("      ...")
    print("  ),")
