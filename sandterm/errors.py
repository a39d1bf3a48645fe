

class STError(Exception):
	pass


class STProvisionError(STError):
	pass


class STCreateFailed(STProvisionError):
	def __init__(self, message: str, exit_code: int | None = None, output: str = ""):
		super().__init__(message)
		self.exit_code = exit_code
		self.output = output


class STSpawnFailed(STProvisionError):
	pass


class STProvisionCancelled(STProvisionError):
	pass


class STAttachError(STError):
	pass


class STSandboxNotFound(STError):
	pass


class STRuntimeError(STError):
	pass


class STSessionBusy(STError):
	pass


