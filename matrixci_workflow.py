# matrixci_workflow.py
# Cross-platform build, test and release matrix for a Rust binary.
# Run with: matrixci run   (or `matrixci plan` to see what each job does)
from __future__ import annotations

from matrixci.dsl import axis, cache, checkout, package, publish, sh, variant, wf
from matrixci.guards import contains, eq, flag, not_
from matrixci.model import FormatRule

CRATE = "wormhole-rs"
RELEASE = eq("toolchain", "stable")


def workflow():
    return wf(
        CRATE,
        job_name="${{ platform.os_name }} with rust ${{ toolchain }}",
        constants={
            "crate": CRATE,
            "git_email": "jdoe@example.com",
            "git_name": "J. Doe",
        },
        # git config --global writes to a per-job file, never the user's ~/.gitconfig
        env={"RUST_BACKTRACE": "1", "GIT_CONFIG_GLOBAL": "${{ job.workspace }}/.gitconfig"},
        axes=[
            axis(
                "platform",
                variant(
                    "FreeBSD-x86_64",
                    os_name="FreeBSD-x86_64",
                    os="ubuntu-20.04",
                    target="x86_64-unknown-freebsd",
                    bin=CRATE,
                    name=f"{CRATE}-FreeBSD-x86_64.tar.gz",
                    skip_tests=True,
                ),
                variant(
                    "Linux-x86_64",
                    os_name="Linux-x86_64",
                    os="ubuntu-20.04",
                    target="x86_64-unknown-linux-musl",
                    bin=CRATE,
                    name=f"{CRATE}-Linux-x86_64-musl.tar.gz",
                ),
                variant(
                    "Windows-x86_64",
                    os_name="Windows-x86_64",
                    os="windows-latest",
                    target="x86_64-pc-windows-msvc",
                    bin=f"{CRATE}.exe",
                    name=f"{CRATE}-Windows-x86_64.zip",
                ),
                variant(
                    "macOS-x86_64",
                    os_name="macOS-x86_64",
                    os="macOS-latest",
                    target="x86_64-apple-darwin",
                    bin=CRATE,
                    name=f"{CRATE}-Darwin-x86_64.tar.gz",
                ),
                defaults={"skip_tests": False},
            ),
            axis("toolchain", "stable", "beta", "nightly"),
        ],
        archive_format=FormatRule(axis="platform", attribute="os", zip_values=frozenset({"windows-latest"})),
        steps=[
            checkout(),
            cache(
                "Cache cargo & target directories",
                key="${{ toolchain }}-${{ platform.target }}",
                paths=["target"],
                inputs=["Cargo.lock"],
            ),
            sh(
                "Configure Git",
                'git config --global user.email "${{ const.git_email }}" && git config --global user.name "${{ const.git_name }}"',
            ),
            sh(
                "Install musl-tools on Linux",
                "sudo apt-get update --yes && sudo apt-get install --yes musl-tools",
                guard=contains("platform.name", "musl"),
                timeout=900,
            ),
            sh(
                "Build binary",
                "cross +${{ toolchain }} build --target ${{ platform.target }} --bins --locked --release",
            ),
            sh(
                "Run tests",
                "cross +${{ toolchain }} test --target ${{ platform.target }} --bins --locked --release",
                guard=not_(flag("platform.skip_tests")),
            ),
            package(
                "Package as archive",
                binary="${{ platform.bin }}",
                archive="${{ platform.name }}",
                source_dir="target/${{ platform.target }}/release",
                guard=RELEASE,
            ),
            publish(
                "Publish release artifacts",
                identity="${{ const.crate }}-${{ platform.os_name }}",
                guard=RELEASE,
            ),
        ],
    )
