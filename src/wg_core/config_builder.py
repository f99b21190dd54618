INTERFACE_TEMPLATE = """[Interface]
Address = {address}
PrivateKey = {private_key}
ListenPort = {listen_port}
"""

PEER_BLOCK_TEMPLATE = """# BEGIN {name}
[Peer]
PublicKey = {public_key}
AllowedIPs = {address}
# END {name}
"""

CLIENT_TEMPLATE = """[Interface]
PrivateKey = {private_key}
Address = {address}
{dns_block}
[Peer]
PublicKey = {server_public_key}
Endpoint = {endpoint}
AllowedIPs = {allowed_ips}
{keepalive_block}"""

LAST_HOST_LINE = "# LastHost = {host}\n"


def generate_interface_config(address, private_key, listen_port):
    return INTERFACE_TEMPLATE.format(
        address=address,
        private_key=private_key,
        listen_port=listen_port,
    )


def generate_peer_block(name, public_key, address):
    return PEER_BLOCK_TEMPLATE.format(
        name=name,
        public_key=public_key,
        address=address,
    )


def generate_client_config(client, server):
    dns_block = f"DNS = {', '.join(client['dns'])}\n" if client.get("dns") else ""
    keepalive = server.get("keepalive")
    keepalive_block = f"PersistentKeepalive = {keepalive}\n" if keepalive else ""
    return CLIENT_TEMPLATE.format(
        private_key=client["private_key"],
        address=client["address"],
        dns_block=dns_block,
        server_public_key=server["public_key"],
        endpoint=server["endpoint"],
        allowed_ips=", ".join(server["allowed_ips"]),
        keepalive_block=keepalive_block,
    )
