# gridci_workflow.py
# Documentation build: renders the dev book per matrix entry and uploads it,
# then builds the rust-docs image (pushed only from main).
from __future__ import annotations

from gridci import cleanup, docker_build, event_is, event_is_not, job, ref_is, sh, upload_artifact, wf

SCCACHE_ENV = {
    "RUSTC_WRAPPER": "sccache",
    "GIT_LFS_SKIP_SMUDGE": "1",
    "CARGO_INCREMENTAL": "0",
    "RUST_BACKTRACE": "full",
    "SCCACHE_BUCKET": "namada-cache",
    "AWS_REGION": "us-east-1",
}

MDBOOK_TOOLS = [
    "rust-lang/mdbook@v0.4.18",
    "badboy/mdbook-mermaid@v0.11.1",
    "Michael-F-Bryan/mdbook-linkcheck@v0.7.6",
    "badboy/mdbook-open-on-gh@v2.2.0",
    "tommilligan/mdbook-admonish@v1.7.0",
    "lzanini/mdbook-katex@v0.4.0",
    "slowsage/mdbook-pagetoc@v0.1.7",
]


def _toolchain_steps():
    return [
        sh("Show checkout (push)", "git log -1 --oneline", when=event_is_not("pull_request_target")),
        sh("Show checkout (PR head)", "git log -1 --oneline", when=event_is("pull_request_target")),
        sh("Install libudev", "sudo apt-get update && sudo apt-get -y install libudev-dev"),
        sh("Show rust toolchain info", "rustup show"),
        sh("Start sccache server", "sccache --start-server"),
    ]


def workflow():
    install_tools = " && ".join(f"curl -k https://installer.heliax.click/{tool}! | bash" for tool in MDBOOK_TOOLS)

    docs = job(
        "docs",
        *_toolchain_steps(),
        sh("Install cargo tools", f"{install_tools} && cd ${{{{ make.folder }}}} && mdbook-admonish install"),
        sh("${{ make.name }}", "${{ make.command }}"),
        upload_artifact(
            "Upload rendered docs",
            "${{ make.folder }}/book",
            bucket="${{ make.bucket }}",
        ),
        sh("Print sccache stats", "sccache --show-stats", always=True),
        cleanup("Stop sccache server", "sccache --stop-server"),
        sh("Clean cargo cache", "cargo install cargo-cache --no-default-features --features ci-autoclean cargo-cache && cargo-cache"),
        matrix={
            "os": ["ubuntu-latest"],
            "nightly_version": ["nightly-2024-02-20"],
            "make": [
                {
                    "name": "Build development docs",
                    "folder": "documentation/dev",
                    "bucket": "namada-dev-static-website",
                    "command": "cargo run --bin namada_encoding_spec && cd documentation/dev && mdbook build",
                },
            ],
        },
        fail_fast=False,
    )

    rust_docs = job(
        "rust-docs",
        *_toolchain_steps(),
        sh("Build rust-docs", "make build-doc"),
        cleanup("Print sccache stats", "sccache --show-stats"),
        cleanup("Stop sccache server", "sccache --stop-server"),
        docker_build(
            "Build and push namada-rust-docs image",
            "ghcr.io/anoma/namada-rust-docs",
            file="docker/docs/Dockerfile",
            push_when=ref_is("refs/heads/main"),
        ),
        sh("Clean cargo cache", "cargo install cargo-cache --no-default-features --features ci-autoclean cargo-cache && cargo-cache"),
        matrix={"os": ["ubuntu-latest"]},
        fail_fast=False,
    )

    return wf("Build docs", docs, rust_docs, env=SCCACHE_ENV)
