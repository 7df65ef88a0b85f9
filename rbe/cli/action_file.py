import os
import tomlkit
from tomlkit import TOMLDocument
from typing import NamedTuple

# Functions to work with an action file, which describes a command to run remotely.
# Utilizes https://github.com/sdispater/tomlkit to work with TOML data.
#
# The expected toml format is:
# --------------------------
# [action]
# root = "."                      #optional, input root, relative to the action file
# inputs = ["src", "build.sh"]    #optional, relative to root, files or directories
# argv = ["sh", "build.sh"]
# output_files = ["out/app"]      #optional
# output_directories = ["gen"]    #optional
#
# [action.env]                    #optional
# PATH = "/usr/bin:/bin"
# --------------------------

ActionFile = NamedTuple("ActionFile",
    [('root', str), # absolute
     ('inputs', list[str]), # absolute
     ('argv', list[str]),
     ('environment', dict[str, str]),
     ('output_files', list[str]),
     ('output_directories', list[str])])

_VALID_ACTION_KEYS = ['root', 'inputs', 'argv', 'env', 'output_files', 'output_directories']

def load_action(toml_file_path:str) -> ActionFile:
    with open(toml_file_path, 'r') as f:
        doc = tomlkit.loads(f.read())
    base_dir = os.path.dirname(os.path.abspath(toml_file_path))
    return loads_action(doc, base_dir)

def loads_action(toml:str|TOMLDocument, base_dir:str) -> ActionFile:
    if(isinstance(toml, str)):
        doc = tomlkit.loads(toml)
    else:
        doc = toml
    _validate_doc(doc)
    action = doc["action"]
    root = os.path.normpath(os.path.join(base_dir, str(action.get("root", "."))))
    inputs = [os.path.normpath(os.path.join(root, str(path))) for path in _str_list(action, "inputs")]
    env = action.get("env", {})
    return ActionFile(
        root=root,
        inputs=inputs,
        argv=_str_list(action, "argv"),
        environment={str(key): str(value) for key, value in env.items()},
        output_files=_str_list(action, "output_files"),
        output_directories=_str_list(action, "output_directories"))

def _str_list(table, key:str) -> list[str]:
    value = table.get(key, None)
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValueError(f"Action item '{key}' must be a string or list of strings, but was {type(value)}.")
    return [str(item) for item in value]

def _validate_doc(doc:TOMLDocument) -> None:
    for key in doc.keys():
        if key != "action":
            raise ValueError(f"Invalid top level key '{key}'. Only 'action' is allowed.")
    if "action" not in doc:
        raise ValueError("No action table is defined. Use [action] to define one.")
    action = doc["action"]
    if not isinstance(action, dict):
        raise ValueError("The action is not a table. Use [action] to define the action.")
    for key in action.keys():
        if key not in _VALID_ACTION_KEYS:
            raise ValueError(f"Invalid action key '{key}'. Valid keys are '{_VALID_ACTION_KEYS}'.")
    if len(_str_list(action, "argv")) == 0:
        raise ValueError("Action 'argv' is required and must not be empty.")
    if "env" in action and not isinstance(action["env"], dict):
        raise ValueError("The action env is not a table. Use [action.env] to define environment variables.")
