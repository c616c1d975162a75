# backend/core/guacamole_client.py
import base64
import logging
import time
from abc import ABC, abstractmethod

import requests
from sqlalchemy import (Column, ForeignKey, Integer, MetaData, String, Table, create_engine, delete,
                        insert, select)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, settings as default_settings
from .events import DirectoryLink, EventBus, NodeDeleted, NodeStarted, NodeStopped

logger = logging.getLogger(__name__)

# Subset of the Guacamole JDBC schema the registrar writes to.
metadata = MetaData()

guacamole_connection = Table(
    "guacamole_connection", metadata,
    Column("connection_id", Integer, primary_key=True, autoincrement=True),
    Column("connection_name", String(128), nullable=False),
    Column("parent_id", Integer, nullable=True),
    Column("protocol", String(32), nullable=False),
)

guacamole_connection_parameter = Table(
    "guacamole_connection_parameter", metadata,
    Column("connection_id", Integer,
           ForeignKey("guacamole_connection.connection_id", ondelete="CASCADE"), primary_key=True),
    Column("parameter_name", String(128), primary_key=True),
    Column("parameter_value", String(4096), nullable=False),
)


def build_client_url(conn_id: str, public_url: str, data_source: str) -> str:
    """Deep link that opens a connection directly in the Guacamole web app."""
    # Guacamole web-app client identifier: base64 of "<id>\0c\0<data source>".
    identifier_bytes = f"{conn_id}\0c\0{data_source}".encode("utf-8")
    encoded_string = base64.b64encode(identifier_bytes).decode("ascii")
    return f"{public_url.rstrip('/')}/#/client/{encoded_string}"


class DirectoryRegistrar(ABC):
    """Keeps one Guacamole VNC connection per running node, named after the node.

    Failures are logged and never raised: ``register`` returns None and
    ``unregister`` returns quietly.
    """

    def __init__(self, cfg: Settings | None = None):
        self.cfg = cfg or default_settings

    def connection_parameters(self, vnc_port: int) -> dict[str, str]:
        return {
            "hostname": self.cfg.guac_vnc_hostname,
            "port": str(vnc_port),
            "password": "",
        }

    @abstractmethod
    def register(self, name: str, vnc_port: int) -> str | None:
        """Create the connection and return its id, or None on failure."""

    @abstractmethod
    def unregister(self, name: str) -> None:
        """Remove every connection with this name."""

    def client_url(self, conn_id: str) -> str:
        return build_client_url(conn_id, self.cfg.guac_public_url, self.cfg.guac_data_source)

    # --- event subscription ---

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(NodeStarted, self.on_node_started)
        bus.subscribe(NodeStopped, self.on_node_stopped)
        bus.subscribe(NodeDeleted, self.on_node_stopped)

    def on_node_started(self, event: NodeStarted) -> DirectoryLink | None:
        conn_id = self.register(event.name, event.vnc_port)
        if conn_id is None:
            return None
        return DirectoryLink(connection_id=conn_id, url=self.client_url(conn_id))

    def on_node_stopped(self, event) -> None:
        self.unregister(event.name)


class NullDirectoryRegistrar(DirectoryRegistrar):
    """Used when no Guacamole is configured."""

    def register(self, name: str, vnc_port: int) -> str | None:
        return None

    def unregister(self, name: str) -> None:
        return None


class SqlDirectoryRegistrar(DirectoryRegistrar):
    """Writes connections straight into the Guacamole database."""

    def __init__(self, cfg: Settings | None = None, engine: Engine | None = None):
        super().__init__(cfg)
        if engine is None:
            connect_args = {}
            if self.cfg.guac_database_url.startswith("postgresql"):
                connect_args["connect_timeout"] = self.cfg.guac_db_connect_timeout
            engine = create_engine(self.cfg.guac_database_url, pool_pre_ping=True,
                                   connect_args=connect_args)
        self.engine = engine

    @staticmethod
    def _delete_by_name(conn, name: str) -> int:
        ids = [row[0] for row in conn.execute(
            select(guacamole_connection.c.connection_id)
            .where(guacamole_connection.c.connection_name == name)
        )]
        if not ids:
            return 0
        conn.execute(delete(guacamole_connection_parameter)
                     .where(guacamole_connection_parameter.c.connection_id.in_(ids)))
        conn.execute(delete(guacamole_connection)
                     .where(guacamole_connection.c.connection_id.in_(ids)))
        return len(ids)

    def register(self, name: str, vnc_port: int) -> str | None:
        logger.info("Registering %s on port %d", name, vnc_port)
        try:
            with self.engine.begin() as conn:
                stale = self._delete_by_name(conn, name)
                if stale:
                    logger.warning("Replaced %d stale Guacamole connection(s) named %s", stale, name)
                result = conn.execute(
                    insert(guacamole_connection).values(connection_name=name, protocol="vnc")
                )
                conn_id = result.inserted_primary_key[0]
                conn.execute(insert(guacamole_connection_parameter), [
                    {"connection_id": conn_id, "parameter_name": key, "parameter_value": value}
                    for key, value in self.connection_parameters(vnc_port).items()
                ])
        except SQLAlchemyError as e:
            logger.error("Guacamole registration failed for %s: %s", name, e)
            return None
        logger.info("Registered %s -> connection %s", name, conn_id)
        return str(conn_id)

    def unregister(self, name: str) -> None:
        try:
            with self.engine.begin() as conn:
                removed = self._delete_by_name(conn, name)
        except SQLAlchemyError as e:
            logger.error("Guacamole cleanup failed for %s: %s", name, e)
            return
        if removed:
            logger.info("Deleted Guacamole connection %s", name)


class RestDirectoryRegistrar(DirectoryRegistrar):
    """Manages connections through the Guacamole REST API."""

    def __init__(self, cfg: Settings | None = None, session: requests.Session | None = None):
        super().__init__(cfg)
        self.session = session or requests.Session()

    @property
    def _connections_url(self) -> str:
        return f"{self.cfg.guacamole_url}/api/session/data/{self.cfg.guac_data_source}/connections"

    def get_token(self) -> str | None:
        """Authenticates with Guacamole and returns an auth token."""
        for attempt in range(2):
            try:
                response = self.session.post(
                    f"{self.cfg.guacamole_url}/api/tokens",
                    data={"username": self.cfg.guac_username, "password": self.cfg.guac_password},
                    timeout=self.cfg.guac_request_timeout,
                )
                response.raise_for_status()
                return response.json()["authToken"]
            except (requests.exceptions.RequestException, KeyError, ValueError) as e:
                logger.warning("Error getting Guacamole token (attempt %d): %s", attempt + 1, e)
                if attempt == 0:
                    time.sleep(2)
        return None

    def _find_ids(self, token: str, name: str) -> list[str]:
        response = self.session.get(self._connections_url, params={"token": token},
                                    timeout=self.cfg.guac_request_timeout)
        response.raise_for_status()
        return [conn_id for conn_id, conn in response.json().items() if conn.get("name") == name]

    def _delete(self, token: str, conn_id: str) -> None:
        encoded_conn_id = conn_id.replace("/", "%2F")
        response = self.session.delete(f"{self._connections_url}/{encoded_conn_id}",
                                       params={"token": token},
                                       timeout=self.cfg.guac_request_timeout)
        response.raise_for_status()

    def register(self, name: str, vnc_port: int) -> str | None:
        token = self.get_token()
        if not token:
            logger.error("Could not authenticate with Guacamole; %s stays unregistered", name)
            return None
        connection_data = {
            "parentIdentifier": "ROOT",
            "name": name,
            "protocol": "vnc",
            "parameters": self.connection_parameters(vnc_port),
            "attributes": {},
        }
        try:
            for stale_id in self._find_ids(token, name):
                self._delete(token, stale_id)
            response = self.session.post(self._connections_url, params={"token": token},
                                         json=connection_data,
                                         timeout=self.cfg.guac_request_timeout)
            response.raise_for_status()
            conn_id = str(response.json()["identifier"])
        except (requests.exceptions.RequestException, KeyError, ValueError) as e:
            logger.error("Guacamole registration failed for %s: %s", name, e)
            return None
        logger.info("Registered %s -> connection %s", name, conn_id)
        return conn_id

    def unregister(self, name: str) -> None:
        token = self.get_token()
        if not token:
            logger.warning("Could not get Guacamole token to delete connection %s", name)
            return
        try:
            for conn_id in self._find_ids(token, name):
                self._delete(token, conn_id)
                logger.info("Deleted Guacamole connection %s (%s)", name, conn_id)
        except requests.exceptions.RequestException as e:
            logger.error("Guacamole cleanup failed for %s: %s", name, e)


def create_registrar(cfg: Settings | None = None) -> DirectoryRegistrar:
    cfg = cfg or default_settings
    if cfg.guac_backend == "sql":
        return SqlDirectoryRegistrar(cfg)
    if cfg.guac_backend == "rest":
        return RestDirectoryRegistrar(cfg)
    return NullDirectoryRegistrar(cfg)
