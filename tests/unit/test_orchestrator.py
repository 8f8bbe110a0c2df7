"""Unit tests for ProjectPipeline against SQLite and a scripted tool chain."""

import io
from pathlib import Path

import pytest

from ml2_backend.exceptions import (
    AlreadyExistsError,
    ArtifactNotFoundError,
    ConversionError,
    GenerationError,
    NotFoundError,
    NotGeneratedError,
    NotOwnerError,
    SpawnError,
)
from ml2_backend.pipeline.guard import ProcessOutcome
from ml2_backend.pipeline.invoker import InvocationResult

ARTIFACT = "app-1.0-jar-with-dependencies.jar"


def spawn_failure(program, args):
    raise SpawnError(f"cannot start {program}")


async def generated_project(pipeline, user, make_upload):
    project = await pipeline.add(user, make_upload())
    return await pipeline.generate(user, project.id)


class TestAdd:
    """Tests for uploading a new model."""

    @pytest.mark.asyncio
    async def test_add_converts_and_persists(self, pipeline, user, storage, make_upload):
        project = await pipeline.add(user, make_upload("model.xml"))

        user_dir = storage.resolve_user_root_directory(user)
        assert project.id is not None
        assert project.owner_id == user.id
        assert project.original_file_name == "model.xml"
        assert project.original_file_path == str(user_dir / "model.xml")
        assert project.converted_file_name == "model_converted.xml"
        assert project.thingml_file_name == "model.thingml"
        assert Path(project.thingml_file_path).is_file()
        assert project.generated_project_path is None
        assert project.upload_date is not None

    @pytest.mark.asyncio
    async def test_add_runs_both_conversions_in_order(self, pipeline, user, invoker, make_upload):
        await pipeline.add(user, make_upload())

        assert invoker.keys() == ["sirius_web_to_desktop.jar", "m2c.jar"]

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, pipeline, user, other_user, make_upload):
        """Original file names are unique across all users."""
        await pipeline.add(user, make_upload("model.xml"))

        with pytest.raises(AlreadyExistsError):
            await pipeline.add(other_user, make_upload("model.xml"))

        assert await pipeline.repository.count() == 1

    @pytest.mark.asyncio
    async def test_format_conversion_failure_persists_nothing(self, pipeline, user, invoker, storage, make_upload):
        invoker.prints("sirius_web_to_desktop.jar", "")

        with pytest.raises(ConversionError) as exc_info:
            await pipeline.add(user, make_upload("model.xml"))

        assert exc_info.value.message.startswith("Can't convert sirius web .xml to EMF xml format")
        assert await pipeline.repository.count() == 0
        assert not (storage.resolve_user_root_directory(user) / "model.xml").exists()
        assert invoker.keys() == ["sirius_web_to_desktop.jar"]

    @pytest.mark.asyncio
    async def test_model_conversion_failure_cleans_up(self, pipeline, user, invoker, storage, make_upload):
        invoker.on("m2c.jar", spawn_failure)

        with pytest.raises(ConversionError) as exc_info:
            await pipeline.add(user, make_upload("model.xml"))

        user_dir = storage.resolve_user_root_directory(user)
        assert exc_info.value.message.startswith("Can't convert to .thingml file")
        assert await pipeline.repository.count() == 0
        assert list(user_dir.iterdir()) == []


    @pytest.mark.asyncio
    async def test_upload_never_takes_over_another_projects_file(self, pipeline, user, make_upload):
        """A file name already used by another project's artifact is deduplicated."""
        first = await pipeline.add(user, make_upload("a.xml"))
        second = await pipeline.add(user, make_upload("a_converted.xml", b"<other/>"))

        assert second.original_file_name == "a_converted.xml"
        assert second.original_file_path != first.converted_file_path
        assert Path(second.original_file_path).name == "a_converted(1).xml"
        assert Path(first.converted_file_path).read_text() == "<emf/>"

        await pipeline.delete(user, second.id)

        assert Path(first.converted_file_path).is_file()
        assert Path(first.original_file_path).is_file()

    @pytest.mark.asyncio
    async def test_staging_directory_removed(self, pipeline, user, storage, make_upload):
        await pipeline.add(user, make_upload())

        names = [p.name for p in storage.resolve_user_root_directory(user).iterdir()]
        assert not any(name.startswith(".staging-") for name in names)


class TestLookup:
    @pytest.mark.asyncio
    async def test_missing_project(self, pipeline, user):
        with pytest.raises(NotFoundError):
            await pipeline.get_project(user, 999)

    @pytest.mark.asyncio
    async def test_foreign_project(self, pipeline, user, other_user, make_upload):
        project = await pipeline.add(user, make_upload())

        with pytest.raises(NotOwnerError):
            await pipeline.get_project(other_user, project.id)

    @pytest.mark.asyncio
    async def test_list_only_own(self, pipeline, user, other_user, make_upload):
        await pipeline.add(user, make_upload("a.xml"))
        await pipeline.add(other_user, make_upload("b.xml"))

        projects = await pipeline.list_projects(user)

        assert [p.original_file_name for p in projects] == ["a.xml"]


class TestUpdate:
    """Tests for replacing a project's model."""

    @pytest.mark.asyncio
    async def test_update_replaces_artifacts(self, pipeline, user, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        old_original = Path(project.original_file_path)
        old_dir = Path(project.generated_project_path)

        updated = await pipeline.update(user, project.id, make_upload("other.xml"))

        assert updated.original_file_name == "other.xml"
        assert updated.thingml_file_name == "other.thingml"
        assert updated.generated_project_path is None
        assert updated.generated_output_path is None
        assert not old_original.exists()
        assert not old_dir.exists()

    @pytest.mark.asyncio
    async def test_failed_update_keeps_project(self, pipeline, user, invoker, make_upload):
        project = await pipeline.add(user, make_upload("model.xml"))
        old_thingml = project.thingml_file_path
        invoker.prints("m2c.jar", "")

        with pytest.raises(ConversionError):
            await pipeline.update(user, project.id, make_upload("other.xml"))

        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.original_file_name == "model.xml"
        assert reloaded.thingml_file_path == old_thingml
        assert Path(old_thingml).is_file()

    @pytest.mark.asyncio
    async def test_update_with_same_name(self, pipeline, user, make_upload):
        project = await pipeline.add(user, make_upload("model.xml", b"<v1/>"))
        old_original = Path(project.original_file_path)

        updated = await pipeline.update(user, project.id, make_upload("model.xml", b"<v2/>"))

        assert updated.original_file_name == "model.xml"
        assert Path(updated.original_file_path).read_bytes() == b"<v2/>"
        assert Path(updated.thingml_file_path).is_file()
        assert not old_original.exists()

    @pytest.mark.asyncio
    async def test_failed_same_name_update_keeps_files(self, pipeline, user, invoker, make_upload):
        """The new upload is converted aside; the current files stay untouched."""
        project = await pipeline.add(user, make_upload("model.xml", b"<v1/>"))
        converted = Path(project.converted_file_path)
        converted.write_text("<emf v1/>")
        invoker.prints("m2c.jar", "")

        with pytest.raises(ConversionError):
            await pipeline.update(user, project.id, make_upload("model.xml", b"<v2/>"))

        reloaded = await pipeline.get_project(user, project.id)
        assert Path(reloaded.original_file_path).read_bytes() == b"<v1/>"
        assert converted.read_text() == "<emf v1/>"
        assert Path(reloaded.thingml_file_path).is_file()
        user_dir = converted.parent
        assert sorted(p.name for p in user_dir.iterdir()) == ["model.thingml", "model.xml", "model_converted.xml"]

    @pytest.mark.asyncio
    async def test_update_to_taken_name(self, pipeline, user, make_upload):
        await pipeline.add(user, make_upload("a.xml"))
        project = await pipeline.add(user, make_upload("b.xml"))

        with pytest.raises(AlreadyExistsError):
            await pipeline.update(user, project.id, make_upload("a.xml"))


class TestGenerate:
    """Tests for code generation."""

    @pytest.mark.asyncio
    async def test_generate_sets_project_directory(self, pipeline, user, storage, make_upload):
        project = await generated_project(pipeline, user, make_upload)

        expected = storage.resolve_user_root_directory(user) / "model"
        assert project.generated_project_path == str(expected)
        assert project.generated_project_name == "model"
        assert (expected / "python_java" / "pom.xml").is_file()

    @pytest.mark.asyncio
    async def test_regenerate_starts_clean(self, pipeline, user, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        stale = Path(project.generated_project_path) / "stale.txt"
        stale.write_text("old")

        await pipeline.generate(user, project.id)

        assert not stale.exists()

    @pytest.mark.asyncio
    async def test_generator_errors_fail_and_leave_record(self, pipeline, user, invoker, make_upload):
        project = await pipeline.add(user, make_upload())
        invoker.prints("mlquadrat.jar", "Parsing\nERROR: unknown type Foo\nError in file model.thingml", exit_code=0)

        with pytest.raises(GenerationError) as exc_info:
            await pipeline.generate(user, project.id)

        assert exc_info.value.error_lines == ["ERROR: unknown type Foo", "Error in file model.thingml"]
        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.generated_project_path is None


    @pytest.mark.asyncio
    async def test_generate_does_not_clobber_existing_directory(self, pipeline, user, storage, make_upload):
        """A directory already named after the model belongs to someone else."""
        foreign = storage.resolve_user_root_directory(user) / "model"
        foreign.mkdir()
        (foreign / "keep.txt").write_text("mine")
        project = await pipeline.add(user, make_upload())

        generated = await pipeline.generate(user, project.id)
        regenerated = await pipeline.generate(user, project.id)

        assert (foreign / "keep.txt").read_text() == "mine"
        assert generated.generated_project_name == "model(1)"
        assert regenerated.generated_project_path == str(foreign.with_name("model(1)"))

    @pytest.mark.asyncio
    async def test_failed_generation_removes_fresh_directory(self, pipeline, user, invoker, storage, make_upload):
        project = await pipeline.add(user, make_upload())
        invoker.prints("mlquadrat.jar", "ERROR: broken")

        with pytest.raises(GenerationError):
            await pipeline.generate(user, project.id)

        assert not (storage.resolve_user_root_directory(user) / "model").exists()

    @pytest.mark.asyncio
    async def test_path_conflict_on_save_is_reported(self, pipeline, user, make_upload):
        first = await generated_project(pipeline, user, make_upload)
        second = await pipeline.add(user, make_upload("other.xml"))
        second.generated_project_path = first.generated_project_path

        with pytest.raises(AlreadyExistsError):
            await pipeline._save(second)


class TestExecute:
    """Tests for packaging and running a generated project."""

    @pytest.mark.asyncio
    async def test_execute_requires_generation(self, pipeline, user, invoker, make_upload):
        project = await pipeline.add(user, make_upload())

        with pytest.raises(NotGeneratedError):
            await pipeline.execute(user, project.id)

        assert "mvn" not in invoker.keys()

    @pytest.mark.asyncio
    async def test_execute_persists_output(self, pipeline, user, invoker, storage, settings, make_upload):
        project = await generated_project(pipeline, user, make_upload)

        run = await pipeline.execute(user, project.id)

        output = storage.resolve_user_root_directory(user) / "model-output.txt"
        assert run.outcome is ProcessOutcome.COMPLETED
        assert output.read_text() == "epoch 1\nepoch 2"
        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.generated_output_path == str(output)
        assert reloaded.has_output is True

        call = invoker.calls[-1]
        assert call.key == ARTIFACT
        assert call.options["deadline"] == settings.execution_time_project
        assert Path(call.options["cwd"]) == Path(project.generated_project_path) / "python_java" / "target"
        assert call.options["env"]["PATH"].startswith(str(settings.conda_path))

    @pytest.mark.asyncio
    async def test_timed_out_run_still_persists_output(self, pipeline, user, invoker, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        invoker.on(ARTIFACT, lambda program, args: InvocationResult(output="A", exit_code=-9, timed_out=True))

        run = await pipeline.execute(user, project.id)

        assert run.outcome is ProcessOutcome.TIMED_OUT
        assert Path(run.output_path).read_text() == "A"
        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.generated_output_path == str(run.output_path)

    @pytest.mark.asyncio
    async def test_missing_artifact(self, pipeline, user, invoker, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        invoker.prints("mvn", "[ERROR] BUILD FAILURE", exit_code=1)

        with pytest.raises(ArtifactNotFoundError):
            await pipeline.execute(user, project.id)

        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.generated_output_path is None

    @pytest.mark.asyncio
    async def test_artifact_cannot_start(self, pipeline, user, invoker, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        invoker.on(ARTIFACT, spawn_failure)

        with pytest.raises(SpawnError):
            await pipeline.execute(user, project.id)

        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.generated_output_path is None

    @pytest.mark.asyncio
    async def test_dataset_copied_into_build(self, pipeline, user, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        await pipeline.add_dataset(user, project.id, make_upload("data.csv", b"a,b\n1,2\n"))

        await pipeline.execute(user, project.id)

        copied = Path(project.generated_project_path) / "python_java" / "target" / "data" / "data.csv"
        assert copied.read_bytes() == b"a,b\n1,2\n"


class TestGenerateImages:
    @pytest.mark.asyncio
    async def test_output_written_next_to_project(self, pipeline, user, invoker, storage, settings, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        invoker.prints("loop.py", "saved loss.png")

        run = await pipeline.generate_images(user, project.id)

        output = storage.resolve_user_root_directory(user) / "model-images-output.txt"
        assert run.finished is True
        assert output.read_text() == "saved loss.png"
        call = invoker.calls[-1]
        assert call.options["cwd"] == project.generated_project_path
        assert call.options["deadline"] == settings.execution_time_images

    @pytest.mark.asyncio
    async def test_script_cannot_start(self, pipeline, user, invoker, make_upload):
        project = await pipeline.add(user, make_upload())
        invoker.on("loop.py", spawn_failure)

        with pytest.raises(SpawnError):
            await pipeline.generate_images(user, project.id)


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_files_and_record(self, pipeline, user, storage, make_upload):
        project = await generated_project(pipeline, user, make_upload)
        await pipeline.execute(user, project.id)
        project = await pipeline.get_project(user, project.id)
        paths = [Path(p) for p in project.owned_paths()] + [Path(project.generated_project_path)]

        await pipeline.delete(user, project.id)

        assert await pipeline.repository.count() == 0
        assert not any(p.exists() for p in paths)
        assert storage.resolve_user_root_directory(user).is_dir()

    @pytest.mark.asyncio
    async def test_delete_foreign_project(self, pipeline, user, other_user, make_upload):
        project = await pipeline.add(user, make_upload())

        with pytest.raises(NotOwnerError):
            await pipeline.delete(other_user, project.id)

        assert await pipeline.repository.count() == 1


class TestDataset:
    @pytest.mark.asyncio
    async def test_replace_and_remove_dataset(self, pipeline, user, make_upload):
        project = await pipeline.add(user, make_upload())
        first = await pipeline.add_dataset(user, project.id, make_upload("one.csv", b"1"))
        first_path = Path(first.dataset_path)

        second = await pipeline.add_dataset(user, project.id, make_upload("two.csv", b"2"))

        assert second.dataset_name == "two.csv"
        assert not first_path.exists()

        cleared = await pipeline.remove_dataset(user, project.id)

        assert cleared.dataset_path is None
        assert not (first_path.parent / "two.csv").exists()

    @pytest.mark.asyncio
    async def test_dataset_named_like_model_file_rejected(self, pipeline, user, make_upload):
        project = await pipeline.add(user, make_upload("model.xml", b"<sirius/>"))

        with pytest.raises(AlreadyExistsError):
            await pipeline.add_dataset(user, project.id, make_upload("model.xml", b"1,2"))

        reloaded = await pipeline.get_project(user, project.id)
        assert reloaded.dataset_path is None
        assert Path(reloaded.original_file_path).read_bytes() == b"<sirius/>"

    @pytest.mark.asyncio
    async def test_dataset_keeps_logical_name_in_build(self, pipeline, user, storage, make_upload):
        """A deduplicated dataset is still copied into the build under its upload name."""
        project = await generated_project(pipeline, user, make_upload)
        storage.store_file(user, "data.csv", io.BytesIO(b"unrelated"))

        with_dataset = await pipeline.add_dataset(user, project.id, make_upload("data.csv", b"a,b\n"))
        await pipeline.execute(user, project.id)

        assert Path(with_dataset.dataset_path).name == "data(1).csv"
        copied = Path(project.generated_project_path) / "python_java" / "target" / "data" / "data.csv"
        assert copied.read_bytes() == b"a,b\n"
