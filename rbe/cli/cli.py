import logging
import os
import sys
import click
from dataclasses import dataclass
from rbe.cas import *
from rbe.cas.stores import LmdbStorage, MemoryStorage
from rbe.runtime.remote_execution_server import start_server
from rbe.runtime.remote_execution_client import RemoteExecutionClient
from . import action_file as af

# Main CLI to run a remote execution worker and to talk to one.
# It utilizes the 'click' library.

@dataclass
class CliContext:
    verbose:bool
    address:str

@click.group()
@click.pass_context
@click.option("--address", "-a", required=False, default=lambda: os.getenv("RBE_ADDRESS", "localhost:50051"), help="Address of the worker. Defaults to $RBE_ADDRESS or localhost:50051.")
@click.option("--verbose", "-v", is_flag=True, help="Will print verbose messages.")
def cli(ctx:click.Context, address:str, verbose:bool):
    #print logs to console
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    ctx.obj = CliContext(verbose=verbose, address=address)

#===========================================================
# 'serve' command
#===========================================================
@cli.command(context_settings={'show_default': True})
@click.pass_context
@click.option("--port", "-p", required=False, default=lambda: os.getenv("RBE_PORT", "50051"), help="Port of the worker.")
@click.option("--work-dir", "-w", required=False, default=lambda: os.getenv("RBE_WORK_DIR", None), help="Where the scratch directories of executions are created. Defaults to $RBE_WORK_DIR.")
@click.option("--store-dir", "-d", required=False, default=lambda: os.getenv("RBE_STORE_DIR", None), help="Where the blobs are stored. Defaults to $RBE_STORE_DIR.")
@click.option("--memory", is_flag=True, help="Keep the blobs in memory only.")
@click.option("--max-workers", required=False, default=10, help="How many requests are handled in parallel.")
def serve(ctx:click.Context, port:str, work_dir:str|None, store_dir:str|None, memory:bool, max_workers:int):
    """Starts the worker and blocks until it is terminated."""
    print("-> Starting Remote Execution Worker")
    if work_dir is None:
        raise click.ClickException("No work dir, use --work-dir or set RBE_WORK_DIR.")
    if memory:
        storage = MemoryStorage()
    elif store_dir is not None:
        storage = LmdbStorage(store_dir, writemap=True)
    else:
        raise click.ClickException("No store dir, use --store-dir, set RBE_STORE_DIR, or use --memory.")

    server, _ = start_server(storage, work_dir=os.path.abspath(work_dir), port=str(port), max_workers=max_workers)
    server.wait_for_termination()

#===========================================================
# 'push' command
#===========================================================
@cli.command()
@click.pass_context
@click.argument("paths", nargs=-1, required=True)
@click.option("--root", "-r", required=False, default=None, help="Root of the input tree. By default, uses the current directory.")
def push(ctx:click.Context, paths:list[str], root:str|None):
    """Uploads files and directories under the root and prints the digest of the input root.
    A single file can be at most 63 MiB, the worker only accepts uploads in one message."""
    cli_ctx:CliContext = ctx.obj
    root = os.path.abspath(root or os.getcwd())
    builder = FileTreeBuilder()
    add_inputs(builder, root, [os.path.abspath(p) for p in paths])
    tree = builder.build()

    client = RemoteExecutionClient(cli_ctx.address)
    try:
        results = client.upload_blobs(tree.required_data)
    finally:
        client.close_sync()
    if cli_ctx.verbose:
        print(f"Uploaded {len(results)} of {len(tree.required_data)} blobs.")
    print(to_digest_str(tree.root_digest))

#===========================================================
# 'run' command
#===========================================================
@cli.command()
@click.pass_context
@click.option("--file", "-f", "file_path", required=True, help="Path to the action file (TOML).")
def run(ctx:click.Context, file_path:str):
    """Uploads the inputs of an action file, executes it, and prints its output.
    Exits with the exit code of the action. Input files can be at most 63 MiB each."""
    cli_ctx:CliContext = ctx.obj
    if not os.path.exists(file_path):
        raise click.ClickException(f"Action file '{file_path}' does not exist.")
    try:
        action = af.load_action(file_path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    builder = FileTreeBuilder()
    add_inputs(builder, action.root, action.inputs)
    tree = builder.build()
    command = Command(action.argv, action.environment, action.output_files, action.output_directories)

    client = RemoteExecutionClient(cli_ctx.address)
    try:
        input_root_digest = client.upload_tree(tree)
        action_digest = client.upload_action(command, input_root_digest)
        if cli_ctx.verbose:
            print(f"Executing action {to_digest_str(action_digest)}")
        result = client.execute(action_digest)
    finally:
        client.close_sync()

    sys.stdout.buffer.write(result.stdout)
    sys.stdout.flush()
    sys.stderr.buffer.write(result.stderr)
    sys.stderr.flush()
    for output_file in result.output_files:
        print(f"output file: {output_file.path} {to_digest_str(output_file.digest)}", file=sys.stderr)
    for output_directory in result.output_directories:
        print(f"output directory: {output_directory.path} {to_digest_str(output_directory.tree_digest)}", file=sys.stderr)
    ctx.exit(result.exit_code)

#===========================================================
# 'cat' command
#===========================================================
@cli.command()
@click.pass_context
@click.argument("digest")
def cat(ctx:click.Context, digest:str):
    """Prints a blob, given as '<hash>/<size>'."""
    cli_ctx:CliContext = ctx.obj
    try:
        parsed = to_digest(digest)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    client = RemoteExecutionClient(cli_ctx.address)
    try:
        data = client.read_blob(parsed)
    finally:
        client.close_sync()
    sys.stdout.buffer.write(data)
    sys.stdout.flush()


if __name__ == '__main__':
    cli(None)
