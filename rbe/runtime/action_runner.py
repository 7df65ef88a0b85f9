import logging
import os
import stat
import subprocess
from typing import NamedTuple
from rbe.cas.cas_model import *
from rbe.cas.cas_serialization import get_file_digest, upload_data_from_bytes
from rbe.cas.file_tree_builder import FileTreeBuilder
from rbe.cas.file_inputs_adder import FileInputsAdder

logger = logging.getLogger(__name__)

RunResult = NamedTuple("RunResult",
    [('action_result', ActionResult),
     ('required_data', list[UploadData])]) # blobs referenced by the result, must be in storage before it is returned


class ActionRunner:
    """Runs a command in a prepared build directory and collects its declared outputs."""

    def run_action(
            self,
            argv:list[str],
            environment:dict[str, str],
            output_files:list[str],
            output_directories:list[str],
            build_dir:str,
            ) -> RunResult:
        if len(argv) == 0:
            raise ValueError("Command has no arguments.")
        for output_path in list(output_files) + list(output_directories):
            _enforce_output_path(output_path)

        logger.debug(f"Running {argv} in '{build_dir}'.")
        process = subprocess.run(
            argv,
            cwd=build_dir,
            env=dict(environment),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE)
        logger.info(f"Command {argv[0]} exited with {process.returncode}.")

        required_data:list[UploadData] = []
        stdout_data = upload_data_from_bytes(process.stdout)
        stderr_data = upload_data_from_bytes(process.stderr)
        required_data.extend([stdout_data, stderr_data])

        real_build_dir = os.path.realpath(build_dir)
        collected_files = []
        for output_path in output_files:
            full_path = _contained_output_path(real_build_dir, output_path)
            if full_path is None:
                continue
            if not os.path.isfile(full_path):
                logger.warning(f"Declared output file '{output_path}' is not a file, skipping it.")
                continue
            digest = get_file_digest(full_path)
            executable = bool(os.stat(full_path).st_mode & stat.S_IXUSR)
            collected_files.append(OutputFile(output_path, digest, executable))
            required_data.append(UploadData(digest, _file_supplier(full_path)))

        collected_directories = []
        for output_path in output_directories:
            full_path = _contained_output_path(real_build_dir, output_path)
            if full_path is None:
                continue
            if not os.path.isdir(full_path):
                logger.warning(f"Declared output directory '{output_path}' is not a directory, skipping it.")
                continue
            # symlinks inside the tree that point out of it are kept as symlinks, not followed
            builder = FileTreeBuilder()
            FileInputsAdder(builder, full_path).add_input(full_path)
            tree = builder.build()
            collected_directories.append(OutputDirectory(output_path, tree.root_digest))
            required_data.extend(tree.required_data)

        action_result = ActionResult(
            exit_code=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
            output_files=collected_files,
            output_directories=collected_directories,
            stdout_digest=stdout_data.digest,
            stderr_digest=stderr_data.digest)
        return RunResult(action_result, required_data)


def _file_supplier(path:str) -> ContentSupplier:
    return lambda: open(path, 'rb')

def _contained_output_path(real_build_dir:str, output_path:str) -> str | None:
    """The full path of an output, or None if it does not exist or is reached through a symlink.
    Only content that lives inside the build dir is ever collected."""
    full_path = os.path.normpath(os.path.join(real_build_dir, output_path))
    if not os.path.lexists(full_path):
        return None
    if os.path.realpath(full_path) != full_path:
        logger.warning(f"Declared output '{output_path}' is or is under a symlink, skipping it.")
        return None
    return full_path

def _enforce_output_path(path:str) -> str:
    if path == "" or os.path.isabs(path) or os.path.normpath(path) != path or path.split(os.sep)[0] == "..":
        raise ValueError(f"Output path must be relative and normalized, but was '{path}'.")
    return path
