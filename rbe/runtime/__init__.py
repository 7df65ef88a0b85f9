from . action_runner import ActionRunner, RunResult
from . remote_execution_server import start_server, parse_resource_name, make_resource_name, InvalidResourceNameError
from . remote_execution_client import RemoteExecutionClient
