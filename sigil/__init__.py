"""
Sigil: regenerative, self-verifying .sg1 containers.

Features:

- ChaosRegen: a seeded logistic-map transform (Z/257 diffusion plus byte-pair
  permutation) that is exactly invertible given the seed.
- Seed envelope sealed with XChaCha20-Poly1305; keyed containers use Argon2id.
- Entropy coding (zstd or deflate, stored when compression does not help).
- Fixed-size chunks with BLAKE2s hashes, Shannon entropy scores and a Merkle root.
- Resilience tiers: LRP XOR stripes, RX rateless GF(256) parity and a header mirror.
- Regeneration of damaged or truncated containers from parity and sibling containers.
- Folder containers whose chunks reference child container roots.
"""

__version__ = "0.1"

from .container import Container, decode_container, encode_container
from .reader import Invalid, Valid, extract, verify
from .regen import Failed, PartialRecovery, Recovered, regenerate
from .writer import create

__all__ = [
    "Container",
    "Failed",
    "Invalid",
    "PartialRecovery",
    "Recovered",
    "Valid",
    "create",
    "decode_container",
    "encode_container",
    "extract",
    "regenerate",
    "verify",
]
