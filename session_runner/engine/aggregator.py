"""Session Runner - Result Aggregator

Folds a raw host invocation into the ExecutionResult callers receive.
"""

from typing import Dict, List, Optional

from session_runner.engine.executor import RawInvocation
from session_runner.errors import CollectedError, FatalError
from session_runner.models import Channel, ExecutionResult

SIDE_CHANNELS = (
    Channel.WARNING,
    Channel.VERBOSE,
    Channel.DEBUG,
    Channel.PROGRESS,
    Channel.INFORMATION,
)


class ResultAggregator:
    """Builds ExecutionResult objects from channel records"""

    def _streams(self, invocation: RawInvocation) -> Dict[str, List[str]]:
        streams = {}
        for channel in SIDE_CHANNELS:
            messages = invocation.channel(channel)
            if messages:
                streams[channel.value] = messages
        return streams

    def _collected(self, invocation: RawInvocation) -> List[CollectedError]:
        return [CollectedError(text) for text in invocation.channel(Channel.ERROR)]

    def aggregate(self, invocation: RawInvocation) -> ExecutionResult:
        errors = self._collected(invocation)
        return ExecutionResult(
            outputs=invocation.channel(Channel.OUTPUT),
            error_messages=[str(e) for e in errors],
            failed=bool(errors),
            streams=self._streams(invocation),
        )

    def aggregate_fatal(self, invocation: Optional[RawInvocation], error: FatalError) -> ExecutionResult:
        """Result for a run aborted by a fatal error.

        Keeps whatever the host had reported before the abort and appends
        the error's own message.
        """
        invocation = invocation or RawInvocation()
        errors = self._collected(invocation)
        return ExecutionResult(
            outputs=invocation.channel(Channel.OUTPUT),
            error_messages=[str(e) for e in errors] + [str(error)],
            failed=True,
            streams=self._streams(invocation),
        )


aggregator = ResultAggregator()
