import os
import sys
import grpc

# The stubs are compiled from the .proto at import time (needs grpcio-tools), instead of checking in
# generated code. grpc resolves the .proto path against sys.path, so the directory that contains the
# rbe package must be on it (it is not for some editable installs).
_PROTO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if _PROTO_ROOT not in sys.path:
    sys.path.append(_PROTO_ROOT)

remote_execution_pb2, remote_execution_pb2_grpc = grpc.protos_and_services("rbe/protos/remote_execution.proto")

__all__ = ['remote_execution_pb2', 'remote_execution_pb2_grpc']
