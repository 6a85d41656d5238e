"""Neo4j connection management, capability probing and error categorization."""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from loguru import logger
from neo4j import GraphDatabase, Session
from neo4j.exceptions import (
    AuthError,
    ClientError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
)

from safetykg.errors import GraphBackendError, GraphErrorCategory
from safetykg.utils.config import DatabaseConfig

T = TypeVar("T")

MSG_AUTH = "Neo4j 认证失败，请检查用户名和密码配置"
MSG_UNAVAILABLE = "Neo4j 服务不可用，请确认数据库已启动并且连接地址正确"
MSG_MISSING_APOC = "Neo4j 缺少 APOC 插件（apoc.convert.*），请安装 APOC 或使用兼容写入模式"


def is_missing_apoc_error(exc: BaseException) -> bool:
    """True when a query failed because an ``apoc.*`` function or procedure is not installed."""
    message = str(exc)
    if "apoc" not in message.lower():
        return False
    markers = ("Unknown function", "no procedure", "There is no procedure", "not found")
    return any(marker.lower() in message.lower() for marker in markers)


def categorize_neo4j_error(exc: BaseException) -> GraphBackendError:
    """Map a driver/database exception onto a :class:`GraphBackendError`."""
    if isinstance(exc, GraphBackendError):
        return exc

    message = str(exc)
    code = getattr(exc, "code", "") or ""
    if isinstance(exc, AuthError) or "Unauthorized" in code or "Unauthorized" in message:
        return GraphBackendError(MSG_AUTH, GraphErrorCategory.AUTH, cause=exc)
    if is_missing_apoc_error(exc):
        return GraphBackendError(MSG_MISSING_APOC, GraphErrorCategory.MISSING_CAPABILITY, cause=exc)
    if (
        isinstance(exc, (ServiceUnavailable, SessionExpired, ConnectionError))
        or "ECONNREFUSED" in message
        or "Connection refused" in message
    ):
        return GraphBackendError(MSG_UNAVAILABLE, GraphErrorCategory.UNAVAILABLE, cause=exc)
    return GraphBackendError(f"图数据库操作失败: {message}", GraphErrorCategory.UNKNOWN, cause=exc)


class Neo4jManager:
    """Manager for Neo4j driver lifecycle and transactional execution.

    Attributes:
        uri: Neo4j connection URI
        user: Neo4j username
        database: Neo4j database name
        driver: Neo4j driver instance
        apoc_available: Cached result of the APOC capability check (None until checked)
    """

    def __init__(self, config: DatabaseConfig, *, driver: Any = None):
        self.uri = config.neo4j_uri
        self.user = config.neo4j_user
        self.password = config.neo4j_password
        self.database = config.neo4j_database
        self.max_pool_size = config.neo4j_max_pool_size
        self.driver = driver
        self._connected = driver is not None
        self.apoc_available: Optional[bool] = None

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """Establish connection to Neo4j.

        Raises:
            GraphBackendError: If the server is unreachable or rejects the credentials
        """
        try:
            self.driver = GraphDatabase.driver(
                self.uri,
                auth=(self.user, self.password),
                max_connection_pool_size=self.max_pool_size,
            )
            self.driver.verify_connectivity()
        except (Neo4jError, DriverError, OSError) as exc:
            error = categorize_neo4j_error(exc)
            logger.error(f"Failed to connect to Neo4j at {self.uri}: {exc}")
            raise error from exc
        self._connected = True
        logger.info(f"Connected to Neo4j at {self.uri}")

    def ensure_connected(self) -> None:
        if not self._connected:
            self.connect()

    def close(self) -> None:
        """Close connection to Neo4j."""
        if self.driver:
            self.driver.close()
            self._connected = False
            logger.info("Closed Neo4j connection")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for a Neo4j session.

        Raises:
            RuntimeError: If not connected to database
        """
        if not self._connected or not self.driver:
            raise RuntimeError("Not connected to Neo4j. Call connect() first.")

        session = self.driver.session(database=self.database)
        try:
            yield session
        finally:
            session.close()

    def execute_write(self, work: Callable[..., T], *args: Any) -> T:
        """Run ``work(tx, *args)`` in one write transaction.

        Raises:
            GraphBackendError: Categorized driver or database failure
        """
        try:
            with self.session() as session:
                return session.execute_write(work, *args)
        except (Neo4jError, DriverError, OSError) as exc:
            raise categorize_neo4j_error(exc) from exc

    def execute_read(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Run a read query and return its records.

        Raises:
            GraphBackendError: Categorized driver or database failure
        """

        def _work(tx: Any) -> List[Any]:
            return list(tx.run(query, parameters or {}))

        try:
            with self.session() as session:
                return session.execute_read(_work)
        except (Neo4jError, DriverError, OSError) as exc:
            raise categorize_neo4j_error(exc) from exc

    def check_apoc(self) -> bool:
        """Check once whether APOC's JSON helpers are installed; the result is cached."""
        if self.apoc_available is not None:
            return self.apoc_available
        try:
            self.execute_read(
                "RETURN apoc.version() AS version, apoc.convert.toJson({ok: true}) AS json"
            )
            self.apoc_available = True
        except GraphBackendError as exc:
            if exc.category != GraphErrorCategory.MISSING_CAPABILITY:
                raise
            self.apoc_available = False
        logger.info(f"APOC capability check: {'available' if self.apoc_available else 'missing'}")
        return self.apoc_available

    def create_schema(self) -> None:
        """Create the Entity id constraint and lookup indexes.

        Rejected statements are logged and skipped.

        Raises:
            GraphBackendError: Auth or connectivity failure while applying the schema
        """
        statements = [
            "CREATE CONSTRAINT entity_id_unique IF NOT EXISTS FOR (e:Entity) REQUIRE e.id IS UNIQUE",
            "CREATE INDEX entity_name IF NOT EXISTS FOR (e:Entity) ON (e.name)",
            "CREATE INDEX entity_type IF NOT EXISTS FOR (e:Entity) ON (e.type)",
        ]
        try:
            with self.session() as session:
                for statement in statements:
                    try:
                        session.run(statement).consume()
                    except AuthError:
                        raise
                    except ClientError as exc:
                        logger.warning(f"Could not apply schema statement: {exc}")
        except (Neo4jError, DriverError, OSError) as exc:
            raise categorize_neo4j_error(exc) from exc
        logger.info("Ensured Neo4j schema for Entity nodes")

    def health_check(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            self.execute_read("RETURN 1 AS ok")
            return True
        except (GraphBackendError, RuntimeError) as exc:
            logger.error(f"Neo4j health check failed: {exc}")
            return False
