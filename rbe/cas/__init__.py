from . cas_model import *
from . cas_serialization import (get_digest, get_stream_digest, get_file_digest, is_hash, is_digest, to_digest_str, to_digest,
                                 bytes_supplier, upload_data_from_bytes, digest_to_proto, proto_to_digest,
                                 directory_to_proto, proto_to_directory, directory_to_bytes, bytes_to_directory,
                                 action_to_bytes, bytes_to_action, command_to_bytes, bytes_to_command,
                                 action_result_to_proto, proto_to_action_result)
from . errors import BlobNotFoundError, DigestMismatchError
from . storage import ContentAddressedStorage
from . file_tree_builder import FileTreeBuilder, BuiltTree
from . file_inputs_adder import FileInputsAdder, TraversalContext, add_inputs
