import os
from unittest.mock import Mock

import pytest

from cleanup import CleanupReport, reap_all, reap_session, remove_file, remove_output_dir
from conftest import make_input


class TestReapSession:
    """Test per-session cleanup"""

    @pytest.mark.asyncio
    async def test_removes_output_and_input(self, tmp_path):
        output = tmp_path / "demo_1"
        output.mkdir()
        (output / "index.m3u8").write_text("#EXTM3U")
        (output / "segment_00000.ts").write_bytes(b"ts")
        input_path = tmp_path / "in.mp4"
        input_path.write_bytes(b"video")

        await reap_session(Mock(output_path=str(output), input_path=str(input_path)))

        assert not output.exists()
        assert not input_path.exists()

    @pytest.mark.asyncio
    async def test_keeps_input_when_asked(self, tmp_path):
        output = tmp_path / "demo_1"
        output.mkdir()
        input_path = tmp_path / "in.mp4"
        input_path.write_bytes(b"video")

        await reap_session(
            Mock(output_path=str(output), input_path=str(input_path)), delete_input=False)

        assert not output.exists()
        assert input_path.exists()

    @pytest.mark.asyncio
    async def test_input_removal_failure_is_swallowed(self, tmp_path):
        output = tmp_path / "demo_1"
        output.mkdir()
        # A directory cannot be removed with os.remove
        bad_input = tmp_path / "not_a_file"
        bad_input.mkdir()

        await reap_session(Mock(output_path=str(output), input_path=str(bad_input)))

        assert not output.exists()
        assert bad_input.exists()

    def test_missing_paths_are_fine(self, tmp_path):
        assert remove_output_dir(str(tmp_path / "missing")) is True
        assert remove_file(str(tmp_path / "missing.mp4")) is True
        assert remove_file(None) is True


class TestReapAll:
    """Test the global wipe"""

    @pytest.mark.asyncio
    async def test_reap_all(self, registry, coordinator, settings):
        for i in range(2):
            await registry.start_session(f"s_{i:08d}", make_input(settings, f"in_{i}.mp4"))
        merge_id = await coordinator.begin_merge(make_input(settings, "pending.mp4"))
        # Leftovers from an earlier run, unknown to the registry
        make_input(settings, "stray.mp4")
        os.makedirs(os.path.join(settings.OUTPUT_DIR, "orphan_00000000"))

        report = await reap_all(registry, coordinator, settings)

        assert report == CleanupReport(
            streams_stopped=2, files_removed=2, directories_removed=1)
        assert report.to_dict() == {
            "streams_stopped": 2, "files_removed": 2, "directories_removed": 1}
        assert len(registry) == 0
        assert merge_id not in coordinator
        assert os.listdir(settings.UPLOAD_DIR) == []
        assert os.listdir(settings.OUTPUT_DIR) == []
        # The directories themselves survive
        assert os.path.isdir(settings.UPLOAD_DIR)
        assert os.path.isdir(settings.OUTPUT_DIR)

    @pytest.mark.asyncio
    async def test_reap_all_on_empty_storage(self, registry, coordinator, settings):
        report = await reap_all(registry, coordinator, settings)
        assert report == CleanupReport()
