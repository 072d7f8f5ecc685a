from __future__ import annotations

import pytest

from ami.correlator import ResponseCorrelator
from ami.event_list import EventListAggregator, completes_event_list, starts_event_list
from ami.events import EventDispatcher
from conftest import QueueStream, make_tokens
from telephony.errors import ActionTimeoutError
from telephony.framing import Message


@pytest.mark.asyncio
async def test_collects_entries_until_complete() -> None:
    stream = QueueStream()
    correlator = ResponseCorrelator(stream, EventDispatcher(), token_factory=make_tokens("s1"))
    token = await correlator.send_action("Status")
    start = Message({"Response": "Success", "ActionID": token, "EventList": "start"})
    stream.inbound.extend(
        [
            Message({"Event": "Status", "ActionID": token, "Channel": "SIP/100"}),
            Message({"Event": "Newchannel", "Channel": "SIP/300"}),
            Message({"Event": "Status", "ActionID": token, "Channel": "SIP/200"}),
            Message({"Event": "StatusComplete", "ActionID": token, "EventList": "Complete", "Items": "2"}),
        ]
    )

    result = await EventListAggregator(correlator).collect(start, token)

    assert result.response is start
    assert [event["Channel"] for event in result.events] == ["SIP/100", "SIP/200"]
    assert result.completion is not None
    assert result.completion["Items"] == "2"
    assert result.get("Response") == "Success"


@pytest.mark.asyncio
async def test_lowercase_complete_ends_the_list() -> None:
    stream = QueueStream()
    correlator = ResponseCorrelator(stream, EventDispatcher(), token_factory=make_tokens("q1"))
    token = await correlator.send_action("QueueStatus")
    start = Message({"Response": "Success", "ActionID": token, "EventList": "start"})
    stream.inbound.extend(
        [
            Message({"Event": "QueueParams", "ActionID": token, "Queue": "support"}),
            Message({"Event": "QueueStatusComplete", "ActionID": token, "EventList": "complete"}),
        ]
    )

    result = await EventListAggregator(correlator).collect(start, token)

    assert len(result.events) == 1
    assert result.completion["Event"] == "QueueStatusComplete"


@pytest.mark.asyncio
async def test_missing_completion_times_out_when_deadline_given() -> None:
    stream = QueueStream()
    correlator = ResponseCorrelator(stream, EventDispatcher(), token_factory=make_tokens("p1"))
    token = await correlator.send_action("ParkedCalls")
    start = Message({"Response": "Success", "ActionID": token, "EventList": "start"})

    with pytest.raises(ActionTimeoutError):
        await EventListAggregator(correlator).collect(start, token, timeout=0.01)


def test_markers_are_case_insensitive() -> None:
    assert starts_event_list(Message({"EventList": "Start"}))
    assert completes_event_list(Message({"EventList": "COMPLETE"}))
    assert not starts_event_list(Message({"Response": "Success"}))
