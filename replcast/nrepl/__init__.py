"""nREPL client for replcast.

- protocol: bencode codec and request builders
- completion: policies deciding when a response batch is complete
- client: one-request-per-connection socket transport
- session: orchestrates clone, eval, interrupt and close for a program
"""

from replcast.nrepl.client import NreplClient
from replcast.nrepl.completion import (
    AdaptiveCompletion,
    CompletionDetector,
    CountedCompletion,
)
from replcast.nrepl.protocol import (
    BencodeDecoder,
    build_request,
    decode,
    encode,
    serialize_request,
)
from replcast.nrepl.session import (
    OutcomeStatus,
    RunOutcome,
    SessionOrchestrator,
)

__all__ = [
    "NreplClient",
    "AdaptiveCompletion",
    "CompletionDetector",
    "CountedCompletion",
    "BencodeDecoder",
    "build_request",
    "decode",
    "encode",
    "serialize_request",
    "OutcomeStatus",
    "RunOutcome",
    "SessionOrchestrator",
]
