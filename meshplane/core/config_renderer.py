# meshplane/core/config_renderer.py
"""
wg-quick Configuration Rendering

Output layout:

    [Interface]
    PrivateKey = ...
    Address = ...
    ListenPort = ...            (hub only)
    PostUp = ...                (gateway hub only)
    PostDown = ...              (gateway hub only)

    [Peer]
    PublicKey = ...
    Endpoint = host:port        (spoke only)
    AllowedIPs = ...
    PersistentKeepalive = 25    (spoke only)

Blocks are separated by one blank line and the text ends with a newline.
"""

import hashlib
import shlex
from typing import Iterable, List, Optional, Sequence, Tuple

from meshplane.config import settings
from meshplane.database.models import Hub, Spoke, HubType
from .keys import KeyVault

Block = Tuple[str, List[Tuple[str, str]]]

DEFAULT_ROUTE = "0.0.0.0/0"

# Resolved by the hub shell when wg-quick runs the hook
DEFAULT_EGRESS = "$(ip route show default | awk '{print $5}' | head -n1)"


def render_blocks(blocks: Sequence[Block]) -> str:
    """Join (section, [(key, value)]) blocks into config text"""
    rendered = []
    for section, entries in blocks:
        lines = [f"[{section}]"]
        lines.extend(f"{key} = {value}" for key, value in entries)
        rendered.append("\n".join(lines))
    return "\n\n".join(rendered) + "\n"


def config_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def spoke_allowed_ips(hub: Hub) -> List[str]:
    """Routes a spoke sends through its hub: the hub network, or everything for a gateway"""
    if hub.hub_type == HubType.GATEWAY.value:
        return [DEFAULT_ROUTE]
    return [hub.network_cidr]


def gateway_hooks(hub: Hub, egress_interface: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    PostUp/PostDown entries that let a gateway hub forward and masquerade spoke traffic

    Other hub types get no hooks. `%i` is expanded by wg-quick to the interface name.
    """
    if hub.hub_type != HubType.GATEWAY.value:
        return []

    egress = shlex.quote(egress_interface) if egress_interface else DEFAULT_EGRESS
    rules = [
        "{op} FORWARD -i %i -j ACCEPT",
        "{op} FORWARD -o %i -j ACCEPT",
        f"-t nat {{op}} POSTROUTING -s {shlex.quote(hub.network_cidr)} -o {egress} -j MASQUERADE",
    ]

    hooks = [("PostUp", "sysctl -w net.ipv4.ip_forward=1")]
    hooks.extend(("PostUp", "iptables " + rule.replace("{op}", "-A")) for rule in rules)
    hooks.extend(("PostDown", "iptables " + rule.replace("{op}", "-D")) for rule in rules)
    return hooks


class ConfigRenderer:
    """
    Renders hub and spoke configuration files

    Private keys are decrypted here and only for the duration of a render.
    """

    def __init__(
        self,
        vault: Optional[KeyVault] = None,
        keepalive: Optional[int] = None,
        egress_interface: Optional[str] = None,
    ):
        self.vault = vault or KeyVault()
        self.keepalive = keepalive or settings.PERSISTENT_KEEPALIVE
        self.egress_interface = egress_interface or settings.GATEWAY_EGRESS_INTERFACE

    def hub_config(self, hub: Hub, private_key: str, spokes: Iterable[Spoke]) -> str:
        blocks: List[Block] = [(
            "Interface",
            [
                ("PrivateKey", private_key),
                ("Address", hub.network_cidr),
                ("ListenPort", str(hub.listen_port)),
                *gateway_hooks(hub, self.egress_interface),
            ],
        )]
        for spoke in spokes:
            blocks.append((
                "Peer",
                [
                    ("PublicKey", spoke.public_key),
                    ("AllowedIPs", f"{spoke.allocated_ip}/32"),
                ],
            ))
        return render_blocks(blocks)

    def spoke_config(self, spoke: Spoke, private_key: str, hub: Hub) -> str:
        interface = [
            ("PrivateKey", private_key),
            ("Address", f"{spoke.allocated_ip}/32"),
        ]
        dns_servers = spoke.dns_servers or hub.dns_servers
        if dns_servers:
            interface.append(("DNS", ", ".join(dns_servers)))

        peer = [
            ("PublicKey", hub.public_key),
            ("Endpoint", f"{hub.endpoint}:{hub.listen_port}"),
            ("AllowedIPs", ", ".join(spoke_allowed_ips(hub))),
            ("PersistentKeepalive", str(self.keepalive)),
        ]
        return render_blocks([("Interface", interface), ("Peer", peer)])

    def render_hub(self, hub: Hub, spokes: Iterable[Spoke]) -> str:
        """Render a hub file with one [Peer] per given spoke"""
        return self.hub_config(hub, self.vault.decrypt(hub.private_key_encrypted), spokes)

    def render_spoke(self, spoke: Spoke) -> str:
        return self.spoke_config(spoke, self.vault.decrypt(spoke.private_key_encrypted), spoke.hub)

    @staticmethod
    def config_path(interface_name: str, config_dir: Optional[str] = None) -> str:
        return f"{(config_dir or settings.WG_CONFIG_DIR).rstrip('/')}/{interface_name}.conf"
