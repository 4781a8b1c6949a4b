import json

from src.athrean.domain.project_models import SaveGenerationRequest
from src.athrean.infrastructure.project_repository import (
    PROJECT_MARKER,
    FileProjectRepository,
    InMemoryProjectRepository,
    build_project_repository,
    decode_project_files,
    encode_project_code,
)


def _payload(name="Card", code="export default function Card(){}"):
    return SaveGenerationRequest(name=name, code=code, prompt="make a card", model="openai/gpt-4o", duration_ms=1200)


def test_encode_marks_athrean_project():
    stored = json.loads(encode_project_code("x"))
    assert stored == {PROJECT_MARKER: True, "files": {"/App.tsx": "x"}}
    assert decode_project_files(encode_project_code("x")) == {"/App.tsx": "x"}


def test_decode_falls_back_to_raw_code():
    assert decode_project_files("export default 1") == {"/App.tsx": "export default 1"}
    assert decode_project_files('{"other": true}') == {"/App.tsx": '{"other": true}'}


def test_in_memory_save_and_lookup():
    repo = InMemoryProjectRepository()
    project = repo.save_generation(_payload())
    assert project.id.startswith("GEN-")
    assert project.id.endswith("-0001")
    assert project.source == "generated"
    assert project.is_public is False
    assert repo.get(project.id) == project
    assert repo.list() == [project]
    assert repo.delete(project.id)
    assert not repo.delete(project.id)


def test_file_repo_persists_and_continues_counter(tmp_path):
    pfile = tmp_path / "projects.json"
    repo = FileProjectRepository(file_path=str(pfile))
    first = repo.save_generation(_payload("One"))
    assert pfile.exists()

    repo2 = FileProjectRepository(file_path=str(pfile))
    loaded = repo2.get(first.id)
    assert loaded is not None and loaded.name == "One"
    second = repo2.save_generation(_payload("Two"))
    assert second.id.endswith("-0002")

    assert repo2.delete(first.id)
    repo3 = FileProjectRepository(file_path=str(pfile))
    assert [p.name for p in repo3.list()] == ["Two"]


def test_file_repo_skips_bad_entries(tmp_path):
    pfile = tmp_path / "projects.json"
    pfile.write_text(json.dumps({"GEN-2025-0007": {"id": "GEN-2025-0007"}}), encoding="utf-8")
    repo = FileProjectRepository(file_path=str(pfile))
    assert repo.list() == []


def test_file_repo_tolerates_unreadable_file(tmp_path):
    pfile = tmp_path / "projects.json"
    pfile.write_text("{not json", encoding="utf-8")
    repo = FileProjectRepository(file_path=str(pfile))
    assert repo.list() == []


def test_factory_selects_implementation(tmp_path):
    assert isinstance(build_project_repository({}), InMemoryProjectRepository)
    repo = build_project_repository(
        {"ATHREAN_PROJECT_STORE_IMPL": "file", "ATHREAN_PROJECTS_FILE": str(tmp_path / "p.json")}
    )
    assert isinstance(repo, FileProjectRepository)
    assert repo.path == tmp_path / "p.json"
