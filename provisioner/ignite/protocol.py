"""Artifact definitions exchanged between provisioning stages and the node roots."""
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Dict, List, Optional
import json


def node_name(index: int) -> str:
    return f"node{index}"


def node_index(name: str) -> int:
    """Inverse of node_name(); raises ValueError for anything else."""
    if not name.startswith("node") or not name[4:].isdigit():
        raise ValueError(f"not a node name: {name!r}")
    return int(name[4:])


@dataclass(frozen=True)
class Node:
    """One cluster participant. Derived from the node count on every run."""
    index: int

    @property
    def name(self) -> str:
        return node_name(self.index)

    @classmethod
    def cluster(cls, count: int) -> List['Node']:
        return [cls(i) for i in range(count)]


@dataclass
class PeerDirectory:
    """Written to: peers.json, as {"node0": "<peer id>", ...}"""
    peers: Dict[int, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.peers)

    def peer_id(self, index: int) -> str:
        return self.peers[index]

    def is_complete(self, count: int) -> bool:
        """Exactly `count` entries keyed 0..count-1 with no repeated peer id."""
        return (
            set(self.peers) == set(range(count))
            and len(set(self.peers.values())) == count
        )

    def to_json(self) -> bytes:
        ordered = {node_name(i): self.peers[i] for i in sorted(self.peers)}
        return json.dumps(ordered, indent=2).encode()

    @classmethod
    def from_json(cls, data: bytes) -> 'PeerDirectory':
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("peer directory must be a JSON object")
        return cls(peers={node_index(k): str(v) for k, v in raw.items()})


@dataclass
class IdentityDocument:
    """Written to: node{i}/identity/node{i}_identity.json in every node root."""
    node_name: str
    public_key: str
    created_at: str = ""
    peer_id: str = ""
    # Fields added by newer issuers are carried through untouched.
    extra: Dict[str, object] = field(default_factory=dict)

    @staticmethod
    def filename(name: str) -> str:
        return f"{name}_identity.json"

    def to_json(self) -> bytes:
        data = asdict(self)
        extra = data.pop("extra")
        if not data["peer_id"]:
            data.pop("peer_id")
        data.update(extra)
        return json.dumps(data, indent=2).encode()

    @classmethod
    def from_json(cls, data: bytes) -> 'IdentityDocument':
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("identity document must be a JSON object")
        known = {k: raw.pop(k) for k in ("node_name", "public_key", "created_at", "peer_id") if k in raw}
        return cls(extra=raw, **known)


@dataclass
class InitiatorIdentity:
    """Written to: event_initiator.identity.json"""
    name: str
    public_key: str
    created_at: str = ""

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), indent=2).encode()

    @classmethod
    def from_json(cls, data: bytes) -> 'InitiatorIdentity':
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("initiator identity must be a JSON object")
        return cls(
            name=raw.get("name", "event_initiator"),
            public_key=raw["public_key"],
            created_at=raw.get("created_at", ""),
        )


@dataclass
class InitiatorMaterial:
    """A freshly issued event-initiator key pair, both halves hex-encoded."""
    private_key_hex: str
    public_key_hex: str


class KeyState(str, Enum):
    """Where a long-lived key ended up after load_or_generate()."""
    ABSENT = "absent"
    GENERATED = "generated"
    PRESENT_VERIFIED = "present-verified"
    CONSISTENCY_VIOLATION = "consistency-violation"


@dataclass
class CopyTask:
    """Copy one node's identity document into another node's root."""
    source: Node
    target: Node


@dataclass
class ResolvedKey:
    """Key material handed from the custodian to the config stage."""
    kind: str
    secret_hex: str
    public_hex: Optional[str] = None
