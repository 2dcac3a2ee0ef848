from .channel import (
    Channel,
    SocketChannel,
    ProxyChannel,
    connect,
    default_socket_paths,
    split_json_object,
    MAX_MESSAGE_SIZE,
    DEFAULT_TIMEOUT,
    )
