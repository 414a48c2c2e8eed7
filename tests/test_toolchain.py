import argparse
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import toolchain
from failures import EnvironmentFailure, PipelineFailure, UpscaleFailure
from toolchain import StageResult


def make_executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


class TestRunSubprocess(unittest.TestCase):
    def test_combines_stdout_and_stderr(self):
        result = toolchain.run_subprocess(
            [
                sys.executable,
                "-c",
                "import sys; print('to-stdout', flush=True); sys.stderr.write('to-stderr\\n')",
            ]
        )
        self.assertTrue(result.ok)
        self.assertIn("to-stdout", result.combined_output)
        self.assertIn("to-stderr", result.combined_output)

    def test_reports_nonzero_exit_without_raising(self):
        result = toolchain.run_subprocess([sys.executable, "-c", "raise SystemExit(3)"])
        self.assertEqual(result.exit_code, 3)
        self.assertFalse(result.ok)

    def test_arguments_are_not_shell_interpolated(self):
        result = toolchain.run_subprocess(
            [sys.executable, "-c", "import sys; print(sys.argv[1])", "it's $HOME; `x`"]
        )
        self.assertEqual(result.combined_output.strip(), "it's $HOME; `x`")


@unittest.skipIf(toolchain.is_windows(), "POSIX permission bits required")
class TestFindTool(unittest.TestCase):
    def test_finds_tool_in_bin_folder(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            expected = make_executable(root / "bin" / "ffmpeg")
            with mock.patch("toolchain.shutil.which", return_value=None):
                self.assertEqual(toolchain.find_tool(root, "ffmpeg"), expected.resolve())

    def test_finds_tool_in_third_party_folder(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            expected = make_executable(
                root / "third_party" / "realesrgan-ncnn-vulkan" / "realesrgan-ncnn-vulkan"
            )
            with mock.patch("toolchain.shutil.which", return_value=None):
                resolved = toolchain.find_tool(root, "realesrgan-ncnn-vulkan")
            self.assertEqual(resolved, expected.resolve())

    def test_project_folder_wins_over_path(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            expected = make_executable(root / "ffprobe")
            with mock.patch("toolchain.shutil.which", return_value="/usr/bin/ffprobe"):
                self.assertEqual(toolchain.find_tool(root, "ffprobe"), expected.resolve())

    def test_non_executable_candidate_is_skipped(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "ffmpeg").write_text("not executable")
            with mock.patch("toolchain.shutil.which", return_value=None):
                with self.assertRaises(EnvironmentFailure):
                    toolchain.find_tool(root, "ffmpeg")

    def test_falls_back_to_path(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            system_tool = make_executable(Path(temp_dir) / "system" / "ffmpeg")
            with mock.patch("toolchain.shutil.which", return_value=str(system_tool)):
                resolved = toolchain.find_tool(Path(temp_dir) / "empty", "ffmpeg")
            self.assertEqual(resolved, system_tool.resolve())

    def test_resolve_toolchain_uses_tools_dir(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            for name in ("ffmpeg", "ffprobe", "realesrgan-ncnn-vulkan"):
                make_executable(root / "bin" / name)
            args = argparse.Namespace(tools_dir=str(root))

            with mock.patch("toolchain.shutil.which", return_value=None):
                with mock.patch(
                    "toolchain.run_subprocess", return_value=StageResult(0, "ffmpeg version 6.1")
                ) as run_mock:
                    resolved = toolchain.resolve_toolchain(args)

            self.assertEqual(resolved.ffmpeg, str((root / "bin" / "ffmpeg").resolve()))
            self.assertEqual(resolved.ffprobe, str((root / "bin" / "ffprobe").resolve()))
            self.assertEqual(
                resolved.realesrgan_binary, (root / "bin" / "realesrgan-ncnn-vulkan").resolve()
            )

        flags = [call.args[0][1] for call in run_mock.call_args_list]
        self.assertEqual(flags, ["-version", "-version", "-h"])


class TestEnvironmentChecks(unittest.TestCase):
    def test_require_command_raises_on_nonzero_exit(self):
        failed = StageResult(1, "error while loading shared libraries: libavcodec.so.60")
        with mock.patch("toolchain.run_subprocess", return_value=failed):
            with self.assertRaises(EnvironmentFailure) as ctx:
                toolchain.require_command("/opt/ffmpeg")

        self.assertIn("libavcodec.so.60", str(ctx.exception))

    def test_require_command_raises_when_not_launchable(self):
        with mock.patch("toolchain.run_subprocess", side_effect=PermissionError("denied")):
            with self.assertRaises(EnvironmentFailure):
                toolchain.require_command("/opt/ffmpeg")

    def test_require_launchable_tolerates_nonzero_help_exit(self):
        with mock.patch("toolchain.run_subprocess", return_value=StageResult(255, "Usage: ...")):
            toolchain.require_launchable("/opt/realesrgan-ncnn-vulkan")

    def test_require_nvidia_gpu_returns_first_name(self):
        listing = StageResult(0, "NVIDIA GeForce RTX 3080\nNVIDIA GeForce RTX 3070\n")
        with mock.patch("toolchain.run_subprocess", return_value=listing):
            self.assertEqual(toolchain.require_nvidia_gpu(), "NVIDIA GeForce RTX 3080")

    def test_require_nvidia_gpu_rejects_empty_listing(self):
        with mock.patch("toolchain.run_subprocess", return_value=StageResult(0, "")):
            with self.assertRaises(EnvironmentFailure):
                toolchain.require_nvidia_gpu()

    def test_require_nvidia_gpu_rejects_missing_nvidia_smi(self):
        with mock.patch("toolchain.run_subprocess", side_effect=FileNotFoundError("nvidia-smi")):
            with self.assertRaises(EnvironmentFailure):
                toolchain.require_nvidia_gpu()


class TestFailures(unittest.TestCase):
    def test_str_appends_tool_output(self):
        failure = PipelineFailure("Failed to assemble video.", output="Unknown encoder\n")
        self.assertEqual(str(failure), "Failed to assemble video.\nUnknown encoder")

    def test_str_without_output_is_message(self):
        self.assertEqual(str(PipelineFailure("No frames found to upscale.")), "No frames found to upscale.")

    def test_upscale_failure_keeps_frame(self):
        failure = UpscaleFailure("Real-ESRGAN failed", frame=Path("frame_00000002.png"))
        self.assertEqual(failure.frame, Path("frame_00000002.png"))
        self.assertIsInstance(failure, RuntimeError)


if __name__ == "__main__":
    unittest.main()
