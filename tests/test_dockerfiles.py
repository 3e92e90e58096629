from pathlib import Path

from shipyard.config import BuildConfig
from shipyard.dockerfiles import (
    render_release_dockerfile,
    render_test_dockerfile,
    resolve_dockerfile,
    write_dockerfiles,
)


def test_release_dockerfile_is_two_phase_and_minimal():
    content = render_release_dockerfile(BuildConfig(binary_name="pccg-rs"))
    assert content.count("FROM ") == 2
    assert "FROM rust:slim AS builder" in content
    assert "FROM debian:bookworm-slim AS final" in content
    assert "COPY --from=builder /usr/local/bin/pccg-rs /bin/pccg-rs" in content
    assert "COPY config.toml /bin/config.toml" in content
    assert "EXPOSE 8080" in content
    assert 'CMD ["pccg-rs", "config.toml"]' in content


def test_release_dockerfile_bakes_commit_with_unversioned_default():
    content = render_release_dockerfile(BuildConfig())
    assert "ARG GIT_COMMIT_HASH=unversioned" in content
    assert "ENV GIT_COMMIT_HASH=${GIT_COMMIT_HASH}" in content
    assert 'io.shipyard.commit="${GIT_COMMIT_HASH}"' in content


def test_dependencies_are_vendored_before_sources_are_copied():
    content = render_release_dockerfile(BuildConfig())
    assert content.index("COPY Cargo.toml Cargo.lock ./") < content.index("cargo vendor") < content.index("COPY src ./src")


def test_test_dockerfile_runs_suite_without_network():
    content = render_test_dockerfile(BuildConfig(test_command="cargo test --offline"))
    assert "RUN --network=none cargo test --offline" in content
    assert "cargo vendor" in content
    assert "EXPOSE" not in content


def test_write_dockerfiles(tmp_path: Path):
    written = write_dockerfiles(BuildConfig(), tmp_path / "out")
    assert sorted(written) == ["Dockerfile", "test.Dockerfile"]
    assert (tmp_path / "out" / "Dockerfile").read_text(encoding="utf-8").startswith("# syntax=docker/dockerfile:1")


def test_repository_dockerfile_takes_precedence(tmp_path: Path):
    path = resolve_dockerfile("docker/Release.Dockerfile", "rendered", "Dockerfile", tmp_path / "src", tmp_path / "work")
    assert path == tmp_path / "src" / "docker" / "Release.Dockerfile"
    assert not (tmp_path / "work" / "Dockerfile").exists()


def test_rendered_dockerfile_is_written_to_workdir(tmp_path: Path):
    path = resolve_dockerfile(None, "FROM scratch\n", "Dockerfile", tmp_path / "src", tmp_path)
    assert path == tmp_path / "Dockerfile"
    assert path.read_text(encoding="utf-8") == "FROM scratch\n"
