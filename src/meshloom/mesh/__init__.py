"""Physical mesh backends."""

from meshloom.core.interfaces import MeshTranslator
from meshloom.core.models import MeshProvider
from meshloom.mesh.istio.translator import IstioTranslator
from meshloom.mesh.ossm.translator import OSSMTranslator


def translator_for(provider: MeshProvider) -> MeshTranslator:
    """Get the translator for a mesh provider."""
    if provider is MeshProvider.UPSTREAM_ISTIO:
        return IstioTranslator()
    if provider is MeshProvider.OPENSHIFT:
        return OSSMTranslator()
    raise ValueError(f"Unsupported mesh provider: {provider}")


__all__ = ["IstioTranslator", "OSSMTranslator", "translator_for"]
