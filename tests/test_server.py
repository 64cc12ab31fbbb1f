"""Tests for the embedded server: connectors, logging, container and launcher."""

import logging
import socket
from importlib.resources import files
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import ValidationError

from devserve.config import ClientAuth, ServerSettings
from devserve.loader import HostPath
from devserve.server import (
    ConnectorFactoryBuilder,
    Launcher,
    LoggingStrategy,
    PlainConnectorFactory,
    RequestLogMiddleware,
    ServerContainer,
    ServerLogBridge,
    SslConnectorFactory,
    UnableToCompleteError,
)
from devserve.server.connector import bind_socket
from devserve.server.log_bridge import escape_control_chars, tree_level
from devserve.treelog import LogLevel, TreeLogger
from devserve.webapp import HostState, LifecycleError, ReloadableApplication

KEYSTORE = str(files("devserve.server").joinpath("localhost.pem"))


def messages(caplog, logger_name: str = "devserve.tests") -> list[str]:
    return [r.getMessage() for r in caplog.records if r.name == logger_name]


class TestTreeLogger:
    """Tests for branch indentation and level filtering."""

    def test_branches_indent(self, tree_logger, caplog):
        """Each branch nests its messages one step deeper."""
        with caplog.at_level(logging.DEBUG):
            branch = tree_logger.branch(LogLevel.INFO, "parent")
            branch.branch(LogLevel.INFO, "child").log(LogLevel.WARN, "grandchild")

        assert messages(caplog) == ["parent", "  child", "    grandchild"]
        assert branch.depth == 1

    def test_level_filtering(self):
        """Messages below the target's level are not loggable."""
        target = logging.getLogger("devserve.tests.quiet")
        target.setLevel(logging.INFO)
        logger = TreeLogger(target)

        assert logger.is_loggable(LogLevel.WARN)
        assert not logger.is_loggable(LogLevel.TRACE)
        assert logging.getLevelName(LogLevel.TRACE) == "TRACE"


class TestConnectors:
    """Tests for connector factories."""

    def test_plain_connector(self, tree_logger):
        """Without SSL the builder produces plain connectors on a real port."""
        factory = ConnectorFactoryBuilder().build()
        assert isinstance(factory, PlainConnectorFactory)

        connector = factory.get_connector(tree_logger, "127.0.0.1", 0)
        try:
            assert connector.local_port > 0
            assert not connector.is_secure
            assert connector.socket.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR) == 0
        finally:
            connector.close()

    def test_port_in_use(self):
        """Binding a port that is already bound fails."""
        first = bind_socket("127.0.0.1", 0)
        try:
            with pytest.raises(OSError):
                bind_socket("127.0.0.1", first.getsockname()[1])
        finally:
            first.close()

    @pytest.mark.parametrize(
        ("client_auth", "keystore", "password", "missing"),
        [
            (None, KEYSTORE, "localhost", "client authentication"),
            (ClientAuth.NONE, None, "localhost", "keystore path"),
            (ClientAuth.NONE, KEYSTORE, None, "keystore password"),
        ],
    )
    def test_ssl_requires_settings(self, client_auth, keystore, password, missing):
        """SSL factories need a client auth mode, a keystore and its password."""
        builder = (
            ConnectorFactoryBuilder()
            .set_use_ssl(True)
            .set_client_auth(client_auth)
            .set_keystore_path(keystore)
            .set_keystore_password(password)
        )
        with pytest.raises(ValueError, match=missing):
            builder.build()

    def test_ssl_connector(self, tree_logger, caplog):
        """SSL connectors carry uvicorn's TLS options."""
        factory = (
            ConnectorFactoryBuilder()
            .set_use_ssl(True)
            .set_client_auth(ClientAuth.WANT)
            .set_keystore_path(KEYSTORE)
            .set_keystore_password("localhost")
            .build()
        )
        assert isinstance(factory, SslConnectorFactory)

        with caplog.at_level(logging.DEBUG):
            connector = factory.get_connector(tree_logger, "127.0.0.1", 0)
        try:
            assert connector.is_secure
            assert connector.ssl_options["ssl_certfile"] == KEYSTORE
            assert connector.ssl_options["ssl_ca_certs"] == KEYSTORE
            assert connector.ssl_options["ssl_cert_reqs"] == ClientAuth.WANT.cert_reqs
            assert "Listening for SSL connections" in messages(caplog)
            assert "  Requesting client certificates" in messages(caplog)
        finally:
            connector.close()

    def test_ssl_bad_password(self, tree_logger, caplog):
        """A keystore that cannot be opened is logged and raised."""
        factory = SslConnectorFactory(ClientAuth.NONE, KEYSTORE, "wrong")
        with caplog.at_level(logging.ERROR), pytest.raises(RuntimeError, match="keystore"):
            factory.get_connector(tree_logger, "127.0.0.1", 0)
        assert "unable to load the SSL keystore" in caplog.text

    def test_client_auth_modes(self):
        """Client auth modes map onto ssl verify modes."""
        import ssl

        assert ClientAuth.NONE.cert_reqs == ssl.CERT_NONE
        assert ClientAuth.WANT.cert_reqs == ssl.CERT_OPTIONAL
        assert ClientAuth.REQUIRE.cert_reqs == ssl.CERT_REQUIRED


async def status_app(scope, receive, send):
    """Answers with the status code named by the last path segment."""
    if scope["path"] == "/boom":
        raise RuntimeError("boom")
    status = int(scope["path"].rsplit("/", 1)[-1] or 200)
    await send({"type": "http.response.start", "status": status, "headers": [(b"x-test", b"1")]})
    await send({"type": "http.response.body", "body": b"ok"})


class TestRequestLog:
    """Tests for access logging."""

    @pytest.mark.parametrize(
        ("path", "query", "status", "expected"),
        [
            ("/", "", 200, (LogLevel.INFO, LogLevel.DEBUG)),
            ("/", "", 302, (LogLevel.INFO, LogLevel.DEBUG)),
            ("/x", "", 500, (LogLevel.ERROR, LogLevel.INFO)),
            ("/x", "", 503, (LogLevel.ERROR, LogLevel.INFO)),
            ("/favicon.ico", "", 404, (LogLevel.TRACE, LogLevel.DEBUG)),
            ("/favicon.ico", "v=2", 404, (LogLevel.WARN, LogLevel.INFO)),
            ("/missing", "", 404, (LogLevel.WARN, LogLevel.INFO)),
            ("/x", "", 403, (LogLevel.WARN, LogLevel.INFO)),
        ],
    )
    def test_strategy(self, path, query, status, expected):
        """Levels follow the response status."""
        strategy = LoggingStrategy.for_response(path, query, status, LogLevel.INFO)
        assert (strategy.log_level, strategy.header_level) == expected

    async def test_logs_request_line_and_headers(self, tree_logger, caplog):
        """Each response is logged with its headers nested beneath it."""
        app = RequestLogMiddleware(status_app, tree_logger, LogLevel.INFO)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            with caplog.at_level(logging.DEBUG):
                response = await client.get("/status/200", params={"q": "1"})

        assert response.status_code == 200
        logged = messages(caplog)
        assert logged[0] == "200 - GET /status/200?q=1 (127.0.0.1) 2 bytes"
        assert "  Request headers" in logged
        assert "    host: test" in logged
        assert "  Response headers" in logged
        assert "    x-test: 1" in logged

    async def test_failing_app_logged_as_error(self, tree_logger, caplog):
        """An app that raises before responding is logged as a 500."""
        app = RequestLogMiddleware(status_app, tree_logger)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            with caplog.at_level(logging.DEBUG), pytest.raises(RuntimeError):
                await client.get("/boom")

        records = [r for r in caplog.records if r.getMessage().startswith("500 - GET /boom")]
        assert records and records[0].levelno == logging.ERROR


class TestLogBridge:
    """Tests for forwarding uvicorn records into tree loggers."""

    def test_escape_control_chars(self):
        """Line breaks and other control characters are replaced."""
        assert escape_control_chars("a\nb\rc\td\x00e") == "a|b<c?d?e"

    def test_level_mapping(self):
        """Standard levels map onto diagnostic levels."""
        assert tree_level(logging.ERROR) == LogLevel.ERROR
        assert tree_level(logging.WARNING) == LogLevel.WARN
        assert tree_level(logging.INFO) == LogLevel.TRACE
        assert tree_level(logging.DEBUG) == LogLevel.SPAM

    def test_forwards_to_target(self, tree_logger, caplog):
        """Records are re-logged on the current target, escaped."""
        bridge = ServerLogBridge(tree_logger.branch(LogLevel.INFO, "operation"))
        record = logging.LogRecord("uvicorn.error", logging.INFO, __file__, 1, "line1\nline2", None, None)

        with caplog.at_level(1):
            bridge.handle(record)

        forwarded = [r for r in caplog.records if r.getMessage() == "  line1|line2"]
        assert forwarded and forwarded[0].levelno == LogLevel.TRACE

    def test_no_target_drops_records(self):
        """Without a target records go nowhere."""
        bridge = ServerLogBridge()
        record = logging.LogRecord("uvicorn", logging.ERROR, __file__, 1, "dropped", None, None)
        bridge.handle(record)
        assert bridge.target is None

    def test_set_target_returns_previous(self, tree_logger):
        """Swapping targets hands back the one replaced."""
        bridge = ServerLogBridge(tree_logger)
        branch = tree_logger.branch(LogLevel.INFO, "reload")
        assert bridge.set_target(branch) is tree_logger
        assert bridge.set_target(None) is branch

    def test_install_replaces_handlers(self):
        """Installed bridges are the only handler of the server loggers."""
        bridge = ServerLogBridge()
        bridge.install()
        try:
            for name in ("uvicorn", "uvicorn.error"):
                server_logger = logging.getLogger(name)
                assert server_logger.handlers == [bridge]
                assert not server_logger.propagate
        finally:
            bridge.uninstall()
        assert bridge not in logging.getLogger("uvicorn").handlers


class FakeServer:
    """Stands in for EmbeddedServer."""

    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


@pytest.fixture
def container(tree_logger, raw_app_root: Path):
    """A container over a started host and a fake server."""
    webapp = ReloadableApplication(tree_logger, raw_app_root, host_path=HostPath([]))
    webapp.start()
    bridge = ServerLogBridge()
    container = ServerContainer(tree_logger, FakeServer(), webapp, 8888, raw_app_root, bridge)
    yield container
    webapp.stop()


class TestServerContainer:
    """Tests for refresh and stop."""

    def test_port(self, container: ServerContainer):
        """The port is fixed at construction."""
        assert container.port == 8888
        assert container.get_port() == 8888

    def test_refresh_reloads(self, container: ServerContainer, raw_app_root: Path, caplog):
        """Refreshing reloads the app and logs the operation."""
        generation = container.webapp.domain.generation
        with caplog.at_level(logging.DEBUG):
            container.refresh()

        assert container.webapp.domain.generation > generation
        logged = messages(caplog)
        assert f"Reloading web app to reflect changes in {raw_app_root}" in logged
        assert "  Reload completed successfully" in logged

    def test_refresh_routes_server_logs_into_branch(self, container: ServerContainer):
        """While refreshing, server records go to the refresh branch."""
        depths = []

        class RecordTarget:
            def before_discard(self, domain):
                depths.append(container._log_bridge.target.depth)

        container.webapp.add_unload_hook(RecordTarget())
        container.refresh()

        assert depths == [1]
        assert container._log_bridge.target is None

    def test_refresh_while_stopped(self, container: ServerContainer, caplog):
        """Refreshing a stopped web app is rejected."""
        container.webapp.stop()
        with caplog.at_level(logging.ERROR), pytest.raises(UnableToCompleteError) as exc_info:
            container.refresh()

        assert isinstance(exc_info.value.__cause__, LifecycleError)
        assert "Unable to restart embedded server" in caplog.text

    def test_refresh_recovers_failed_app(self, container: ServerContainer, raw_app_root: Path):
        """A refresh after a failed one starts the web app afresh."""
        (raw_app_root / "helper.py").write_text("VALUE = (\n")
        with pytest.raises(UnableToCompleteError):
            container.refresh()
        assert container.webapp.state is HostState.FAILED

        (raw_app_root / "helper.py").write_text('VALUE = "back"\n')
        container.refresh()
        assert container.webapp.state is HostState.RUNNING

    def test_stop(self, container: ServerContainer, caplog):
        """Stopping stops the web app and then the server."""
        with caplog.at_level(logging.DEBUG):
            container.stop()

        assert container.webapp.state is HostState.STOPPED
        assert container.server.stopped
        assert "Stopping embedded server" in messages(caplog)
        assert "  Stopped successfully" in messages(caplog)


class TestLauncherArguments:
    """Tests for launcher argument processing."""

    def test_no_arguments(self, tree_logger):
        """An empty argument string is valid."""
        launcher = Launcher()
        assert launcher.process_arguments(tree_logger, "")
        assert launcher.process_arguments(tree_logger, None)
        assert not launcher.is_secure

    def test_ssl_uses_default_keystore(self, tree_logger):
        """ssl alone falls back to the bundled keystore."""
        launcher = Launcher()
        assert launcher.process_arguments(tree_logger, "ssl")
        assert launcher.is_secure
        assert Path(launcher.keystore).name == "localhost.pem"
        assert launcher.keystore_password == "localhost"

    def test_explicit_keystore_and_client_auth(self, tree_logger):
        """Later arguments override the defaults set by ssl."""
        launcher = Launcher()
        assert launcher.process_arguments(
            tree_logger, "ssl,keystore=/srv/tls.pem,password=pw,clientAuth=REQUIRE"
        )
        assert launcher.keystore == "/srv/tls.pem"
        assert launcher.keystore_password == "pw"
        assert launcher.client_auth is ClientAuth.REQUIRE

    def test_ssl_without_password(self, tree_logger, caplog):
        """A keystore given before ssl leaves the password unset."""
        launcher = Launcher()
        with caplog.at_level(logging.ERROR):
            assert not launcher.process_arguments(tree_logger, "keystore=/srv/tls.pem,ssl")
        assert "A keystore password is required to use SSL" in caplog.text

    def test_pwfile(self, tree_logger, tmp_path: Path):
        """The password file's contents are trimmed."""
        pwfile = tmp_path / "pw.txt"
        pwfile.write_text("  secret \n")
        launcher = Launcher()
        assert launcher.process_arguments(tree_logger, f"pwfile={pwfile}")
        assert launcher.keystore_password == "secret"

    def test_missing_pwfile(self, tree_logger, tmp_path: Path, caplog):
        """An unreadable password file rejects the arguments."""
        launcher = Launcher()
        with caplog.at_level(logging.ERROR):
            assert not launcher.process_arguments(tree_logger, f"pwfile={tmp_path / 'none'}")
        assert "Unable to read keystore password" in caplog.text

    def test_unknown_argument(self, tree_logger, caplog):
        """Unknown argument names are rejected."""
        launcher = Launcher()
        with caplog.at_level(logging.ERROR):
            assert not launcher.process_arguments(tree_logger, "ssl,bogus=1")
        assert "Unexpected argument to Launcher: bogus" in caplog.text

    def test_invalid_client_auth_ignored(self, tree_logger, caplog):
        """An invalid clientAuth value is ignored with a warning."""
        launcher = Launcher()
        with caplog.at_level(logging.WARNING):
            assert launcher.process_arguments(tree_logger, "clientAuth=MAYBE")
        assert launcher.client_auth is ClientAuth.NONE
        assert "Ignoring invalid clientAuth of 'MAYBE'" in caplog.text

    def test_configure_from_settings(self):
        """Server settings configure the launcher."""
        launcher = Launcher(ServerSettings(bind_address="127.0.0.1", request_log_level=LogLevel.TRACE))
        assert launcher.bind_address == "127.0.0.1"
        assert launcher.base_log_level is LogLevel.TRACE

        launcher.base_log_level = LogLevel.DEBUG
        assert launcher.base_log_level is LogLevel.DEBUG


class TestLauncherStart:
    """Tests for starting containers."""

    @pytest.mark.parametrize("port", [-1, 70000])
    def test_invalid_port_rejected_before_building(self, tree_logger, raw_app_root: Path, port: int):
        """Out-of-range ports fail validation before anything is created."""
        launcher = Launcher()
        with pytest.raises(ValidationError):
            launcher.start(tree_logger, port, raw_app_root)
        assert launcher.log_bridge.target is None

    @pytest.mark.network
    def test_serve_refresh_stop(self, tree_logger, raw_app_root: Path, caplog):
        """A launched container serves, reloads on refresh and stops."""
        launcher = Launcher(ServerSettings(bind_address="127.0.0.1"))
        container = launcher.start(tree_logger, 0, raw_app_root)
        try:
            url = f"http://127.0.0.1:{container.port}/"
            with caplog.at_level(logging.INFO):
                assert httpx.get(url).text == "one:hello"
            assert any(m.startswith("200 - GET / (127.0.0.1)") for m in messages(caplog))

            (raw_app_root / "helper.py").write_text('VALUE = "two"\n')
            container.refresh()
            assert httpx.get(url).text == "two:hello"
        finally:
            container.stop()
            launcher.log_bridge.uninstall()

        assert container.webapp.state is HostState.STOPPED
        with pytest.raises(httpx.TransportError):
            httpx.get(url)

    @pytest.mark.network
    def test_serve_over_ssl(self, tree_logger, raw_app_root: Path):
        """With ssl the container serves HTTPS using the bundled keystore."""
        launcher = Launcher(ServerSettings(bind_address="127.0.0.1"))
        assert launcher.process_arguments(tree_logger, "ssl")
        container = launcher.start(tree_logger, 0, raw_app_root)
        try:
            response = httpx.get(f"https://127.0.0.1:{container.port}/", verify=False)
            assert response.text == "one:hello"
        finally:
            container.stop()
            launcher.log_bridge.uninstall()
