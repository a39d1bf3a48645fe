from sandterm.config import Config
from sandterm.core.gateway import SessionGateway
from sandterm.core.lifecycle import TerminalSession
from sandterm.core.provisioner import Provisioner
from sandterm.core.pty_bridge import PtyBridge
from sandterm.types import Dimensions, ProvisionResult, SessionState

__all__ = [
	"Config",
	"SessionGateway",
	"TerminalSession",
	"Provisioner",
	"PtyBridge",
	"Dimensions",
	"ProvisionResult",
	"SessionState",
]
