import errno
import os
import pytest
from rbe.cas import *
from helpers_cas import create_file, make_root, RecordingBuilder

def create_files(root):
    create_file(f"{root}/src", "main.c", "int main() { return 0; }")
    create_file(f"{root}/src/lib", "lib.c", "int lib() { return 1; }")
    create_file(f"{root}/tools", "build.sh", "#!/bin/sh\necho building", executable=True)
    create_file(root, "README", "readme")

def test_add_directory(tmp_path):
    root = make_root(tmp_path)
    create_files(root)
    builder = RecordingBuilder()
    adder = FileInputsAdder(builder, root)
    adder.add_input(root)

    assert builder.file_paths() == ["README", "src/lib/lib.c", "src/main.c", "tools/build.sh"]
    assert builder.symlinks == []

def test_file_fidelity(tmp_path):
    root = make_root(tmp_path)
    create_files(root)
    builder = RecordingBuilder()
    FileInputsAdder(builder, root).add_input(root)

    for path, input_file in builder.files:
        full_path = os.path.join(root, path)
        digest = get_file_digest(full_path)
        assert input_file.hash == digest.hash
        assert input_file.size_bytes == digest.size_bytes
        assert input_file.executable == (path == "tools/build.sh")
        with open(full_path, "rb") as f:
            content = f.read()
        # the supplier can be read more than once
        for _ in range(2):
            with input_file.content_supplier() as stream:
                assert stream.read() == content

def test_add_input_is_idempotent(tmp_path):
    root = make_root(tmp_path)
    create_files(root)

    once = RecordingBuilder()
    FileInputsAdder(once, root).add_input(root)

    twice = RecordingBuilder()
    adder = FileInputsAdder(twice, root)
    adder.add_input(root)
    adder.add_input(root)
    assert twice.file_records() == once.file_records()
    assert len(once.files) == 4

    # a child before its parent, and a child after its parent
    overlapping = RecordingBuilder()
    adder = FileInputsAdder(overlapping, root)
    adder.add_input(os.path.join(root, "src", "lib", "lib.c"))
    adder.add_input(os.path.join(root, "src"))
    adder.add_input(root)
    adder.add_input(os.path.join(root, "tools"))
    assert overlapping.file_paths() == once.file_paths()
    assert sorted(overlapping.file_records()) == sorted(once.file_records())

def test_paths_outside_of_root_are_ignored(tmp_path):
    root = make_root(tmp_path)
    outside = os.path.realpath(os.path.join(str(tmp_path), "outside"))
    create_file(outside, "secret.txt", "secret")
    create_file(root, "inside.txt", "inside")

    builder = RecordingBuilder()
    adder = FileInputsAdder(builder, root)
    adder.add_input(outside)
    adder.add_input(os.path.join(outside, "secret.txt"))
    assert builder.files == []
    assert builder.symlinks == []

    # a sibling directory that shares the root's name as a prefix is outside too
    sibling = root + "-sibling"
    create_file(sibling, "other.txt", "other")
    adder.add_input(sibling)
    assert builder.files == []

def test_symlink_to_outside_is_added_but_not_followed(tmp_path):
    root = make_root(tmp_path)
    outside = os.path.realpath(os.path.join(str(tmp_path), "outside"))
    secret = create_file(outside, "secret.txt", "secret")
    os.symlink(secret, os.path.join(root, "link"))
    os.symlink(outside, os.path.join(root, "dirlink"))

    builder = RecordingBuilder()
    FileInputsAdder(builder, root).add_input(root)
    assert builder.files == []
    assert sorted(builder.symlinks) == [("dirlink", outside), ("link", secret)]

def test_symlink_to_file_inside_root(tmp_path):
    root = make_root(tmp_path)
    create_file(f"{root}/data", "f.txt", "data")
    os.makedirs(f"{root}/bin")
    os.symlink("../data/f.txt", f"{root}/bin/link")

    builder = RecordingBuilder()
    adder = FileInputsAdder(builder, root)
    adder.add_input(f"{root}/bin/link")
    adder.add_input(root)

    assert builder.symlinks == [("bin/link", "../data/f.txt")]
    assert builder.file_paths() == ["data/f.txt"]
    # the target, resolved relative to the symlink, is the real target
    link_path, link_target = builder.symlinks[0]
    resolved = os.path.normpath(os.path.join(root, os.path.dirname(link_path), link_target))
    assert resolved == os.path.realpath(f"{root}/bin/link")

def test_absolute_symlink_inside_root_is_made_relative(tmp_path):
    root = make_root(tmp_path)
    create_file(f"{root}/data", "f.txt", "data")
    os.symlink(f"{root}/data/f.txt", f"{root}/link")

    builder = RecordingBuilder()
    FileInputsAdder(builder, root).add_input(f"{root}/link")
    assert builder.symlinks == [("link", "data/f.txt")]
    assert builder.file_paths() == ["data/f.txt"]

def test_symlinked_parent_directory(tmp_path):
    root = make_root(tmp_path)
    create_file(f"{root}/real", "f.txt", "data")
    create_file(f"{root}/real", "g.txt", "more data")
    os.symlink("real", f"{root}/linked")

    builder = RecordingBuilder()
    adder = FileInputsAdder(builder, root)
    adder.add_input(f"{root}/linked/f.txt")
    assert builder.symlinks == [("linked", "real")]
    assert builder.file_paths() == ["real/f.txt"]

    # adding the symlinked directory continues into its target, once
    adder.add_input(f"{root}/linked")
    adder.add_input(f"{root}/real")
    assert builder.symlinks == [("linked", "real")]
    assert builder.file_paths() == ["real/f.txt", "real/g.txt"]

def test_chained_symlinks(tmp_path):
    root = make_root(tmp_path)
    create_file(f"{root}/a/b", "f.txt", "data")
    os.symlink("a", f"{root}/x")
    os.symlink("x/b", f"{root}/y")

    builder = RecordingBuilder()
    FileInputsAdder(builder, root).add_input(f"{root}/y/f.txt")
    assert sorted(builder.symlinks) == [("x", "a"), ("y", "x/b")]
    assert builder.file_paths() == ["a/b/f.txt"]

def test_symlink_to_ancestor_terminates(tmp_path):
    root = make_root(tmp_path)
    create_file(f"{root}/dir", "f.txt", "data")
    os.symlink("..", f"{root}/dir/up")

    builder = RecordingBuilder()
    FileInputsAdder(builder, root).add_input(root)
    assert builder.symlinks == [("dir/up", "..")]
    assert builder.file_paths() == ["dir/f.txt"]

def test_symlink_loop(tmp_path):
    root = make_root(tmp_path)
    os.symlink("b", f"{root}/a")
    os.symlink("a", f"{root}/b")

    builder = RecordingBuilder()
    with pytest.raises(OSError) as e:
        FileInputsAdder(builder, root).add_input(f"{root}/a")
    assert e.value.errno == errno.ELOOP

def test_missing_path_adds_nothing(tmp_path):
    root = make_root(tmp_path)
    builder = RecordingBuilder()
    FileInputsAdder(builder, root).add_input(f"{root}/does/not/exist")
    assert builder.files == []
    assert builder.symlinks == []

def test_preconditions(tmp_path):
    root = make_root(tmp_path)
    adder = FileInputsAdder(RecordingBuilder(), root)
    with pytest.raises(ValueError):
        adder.add_input("relative/path")
    with pytest.raises(ValueError):
        adder.add_input(f"{root}/a/../b")
    with pytest.raises(ValueError):
        FileInputsAdder(RecordingBuilder(), "relative/root")

def test_injected_filesystem(tmp_path):
    root = make_root(tmp_path)
    create_file(root, "f.txt", "data")
    hashed = []

    def fake_hasher(path:str) -> str:
        hashed.append(path)
        return "ab" * 32

    builder = RecordingBuilder()
    FileInputsAdder(builder, root, file_hasher=fake_hasher).add_input(root)
    assert hashed == [f"{root}/f.txt"]
    assert builder.files[0][1].hash == "ab" * 32

def test_add_inputs_uses_a_fresh_context(tmp_path):
    root = make_root(tmp_path)
    create_files(root)
    first = RecordingBuilder()
    second = RecordingBuilder()
    add_inputs(first, root, [root])
    add_inputs(second, root, [root])
    assert first.file_paths() == second.file_paths()
    assert first.build().root_digest == second.build().root_digest
