import os
from rbe.cas import *

def create_file(path, file_name, content:str|bytes, executable:bool=False) -> str:
    os.makedirs(path, exist_ok=True)
    if(isinstance(content, str)):
        content = content.encode('utf-8')
    file_path = os.path.join(path, file_name)
    with open(file_path, "wb") as f:
        f.write(content)
    if executable:
        os.chmod(file_path, 0o755)
    return file_path

def make_root(tmp_path) -> str:
    # tmp dirs can live behind a symlink (e.g. on macOS), the adder expects canonical roots
    root = os.path.realpath(os.path.join(str(tmp_path), "root"))
    os.makedirs(root, exist_ok=True)
    return root

class RecordingBuilder(FileTreeBuilder):
    """Remembers every call, so tests can check what was added and how often."""
    def __init__(self):
        super().__init__()
        self.files:list[tuple[str, InputFile]] = []
        self.symlinks:list[tuple[str, str]] = []

    def add_file(self, path:str, input_file:InputFile) -> None:
        self.files.append((path, input_file))
        super().add_file(path, input_file)

    def add_symlink(self, path:str, target:str) -> None:
        self.symlinks.append((path, target))
        super().add_symlink(path, target)

    def file_paths(self) -> list[str]:
        return sorted(path for path, _ in self.files)

    def file_records(self) -> list[tuple[str, Hash, int, bool]]:
        # content suppliers are partials, which only compare equal to themselves
        return [(path, f.hash, f.size_bytes, f.executable) for path, f in self.files]
