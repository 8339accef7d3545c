"""Session Runner Engine

Session lifecycle components:
- fetcher: registry download of package archives
- installer: archive extraction into the session directory
- context: session id, directory, environment overlay, trust
- executor: provisioning, fragment staging, single host invocation
- host: the interpreter side of an invocation (child process)
- aggregator: raw channel records -> ExecutionResult
- reaper: guaranteed session directory teardown
"""
