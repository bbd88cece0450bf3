"""Labels, annotations and object names shared between hub and spoke."""

# Logical API
MESH_GROUP = "mesh.meshloom.io"
MESH_VERSION = "v1alpha1"
MESH_API_VERSION = f"{MESH_GROUP}/{MESH_VERSION}"

# Labels and annotations used as protocol fields
DISCOVERY_LABEL = "meshloom.io/discovery"
DISCOVERED_FROM_ANNOTATION = "meshloom.io/discovered-from"
FEDERATION_OWNER_ANNOTATION = "meshloom.io/federation-owner"
PEER_OWNERS_ANNOTATION = "meshloom.io/peer-owners"
MESH_DEPLOYMENT_NAMESPACE_LABEL = "meshloom.io/mesh-deployment-namespace"
GATEWAY_OWNER_LABEL = "meshloom.io/gateway-for"
FEDERATION_LABEL = "meshloom.io/federation"
MESH_DEPLOYMENT_LABEL = "meshloom.io/mesh-deployment"
SOURCE_SERVICE_ANNOTATION = "meshloom.io/source-service"
TRUE = "true"

# Finalizers
MESH_FINALIZER = "meshloom.io/mesh-resources-cleanup"
MESH_DEPLOYMENT_FINALIZER = "meshloom.io/meshdeployment-resources-cleanup"
MESH_FEDERATION_FINALIZER = "meshloom.io/meshfederation-resources-cleanup"

DEFAULT_TRUST_DOMAIN = "cluster.local"

# Physical mesh conventions
ISTIO_CA_CONFIGMAP = "istio-ca-root-cert"
ISTIO_CONFIG_LABEL = "istio.io/config"
ISTIO_CA_SECRET = "cacerts"
ISTIOD_APP_LABEL = "app=istiod"
INGRESS_FOR_LABEL = "federation.maistra.io/ingress-for"
EGRESS_FOR_LABEL = "federation.maistra.io/egress-for"
CROSS_NETWORK_GATEWAY = "cross-network-gateway"

# Certificate material keys
CA_CERT_KEY = "ca-cert.pem"
ROOT_CERT_KEY = "root-cert.pem"
CERT_CHAIN_KEY = "cert-chain.pem"
CA_KEY_KEY = "ca-key.pem"
CSR_KEY = "cert-csr.pem"
CSR_HOST_KEY = "csr-host"

# Federation config map keys
PEER_ENDPOINT_KEY = "mesh-peer-endpoint"
PEER_TRUST_DOMAIN_KEY = "mesh-peer-trustdomain"
PEER_NAMESPACE_KEY = "mesh-peer-namespace"
MESH_NAMESPACE_KEY = "mesh-namespace"
