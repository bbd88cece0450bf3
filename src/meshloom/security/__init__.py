"""Certificate engine."""

from meshloom.security.certificate import (
    append_parent_certs,
    build_cert_for_csr,
    build_intermediate_ca,
    build_intermediate_csr,
    build_root_ca,
)

__all__ = [
    "append_parent_certs",
    "build_cert_for_csr",
    "build_intermediate_ca",
    "build_intermediate_csr",
    "build_root_ca",
]
