from servers.client import HttpRelayClient
from servers.service import create_server_pool_service, create_server_status_service

server_client = HttpRelayClient()
server_pool_service = create_server_pool_service()
server_status_service = create_server_status_service(server_client)
