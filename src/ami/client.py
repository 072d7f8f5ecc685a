"""Manager client with one helper per common action."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ami.connection import ManagerConnection
from ami.event_list import EventListResponse, completes_event_list
from telephony.errors import AuthenticationError
from telephony.framing import Message

LOGGER = logging.getLogger(__name__)

Response = Message | EventListResponse


def _params(**values: Any) -> dict[str, Any]:
    # Wire names are the keys; unset (None) values are omitted.
    return {key: value for key, value in values.items() if value is not None}


class AsteriskManager(ManagerConnection):
    """``async with AsteriskManager(config) as ami: await ami.ping()``."""

    async def __aenter__(self) -> AsteriskManager:
        if not await self.connect():
            raise AuthenticationError(f"Could not log in to manager {self.server}:{self.port}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    async def ping(self) -> Response:
        return await self.request("Ping")

    async def logoff(self) -> Response:
        return await self.request("Logoff")

    async def command(self, command: str, action_id: str | None = None) -> Response:
        """Run a CLI command; its output is in the response's ``payload``."""

        return await self.request("Command", _params(Command=command, ActionID=action_id))

    async def events(self, event_mask: str) -> Response:
        """``event_mask`` is ``on``, ``off`` or a class list such as ``system,call,log``."""

        return await self.request("Events", {"EventMask": event_mask})

    async def originate(
        self,
        channel: str,
        exten: str | None = None,
        context: str | None = None,
        priority: str | int | None = None,
        application: str | None = None,
        data: str | None = None,
        timeout: int | None = None,
        callerid: str | None = None,
        variables: Sequence[str] | str | None = None,
        account: str | None = None,
        run_async: bool | None = None,
        action_id: str | None = None,
    ) -> Response:
        params = _params(
            Channel=channel,
            Exten=exten,
            Context=context,
            Priority=priority,
            Application=application,
            Data=data,
            Timeout=timeout,
            CallerID=callerid,
            Variable=variables,
            Account=account,
            Async=run_async,
            ActionID=action_id,
        )
        return await self.request("Originate", params)

    async def hangup(self, channel: str) -> Response:
        return await self.request("Hangup", {"Channel": channel})

    async def redirect(self, channel: str, extra_channel: str, exten: str, context: str, priority: str | int) -> Response:
        params = {
            "Channel": channel,
            "ExtraChannel": extra_channel,
            "Exten": exten,
            "Context": context,
            "Priority": priority,
        }
        return await self.request("Redirect", params)

    async def atxfer(self, channel: str, exten: str, context: str, priority: str | int = 1) -> Response:
        return await self.request("Atxfer", {"Channel": channel, "Exten": exten, "Context": context, "Priority": priority})

    async def absolute_timeout(self, channel: str, timeout: int) -> Response:
        return await self.request("AbsoluteTimeout", {"Channel": channel, "Timeout": timeout})

    async def get_var(self, channel: str, variable: str, action_id: str | None = None) -> Response:
        return await self.request("GetVar", _params(Channel=channel, Variable=variable, ActionID=action_id))

    async def set_var(self, channel: str, variable: str, value: str) -> Response:
        return await self.request("SetVar", {"Channel": channel, "Variable": variable, "Value": value})

    async def status(self, channel: str | None = None, action_id: str | None = None) -> Response:
        return await self.request("Status", _params(Channel=channel, ActionID=action_id))

    async def extension_state(self, exten: str, context: str, action_id: str | None = None) -> Response:
        return await self.request("ExtensionState", _params(Exten=exten, Context=context, ActionID=action_id))

    async def mailbox_count(self, mailbox: str, action_id: str | None = None) -> Response:
        return await self.request("MailboxCount", _params(Mailbox=mailbox, ActionID=action_id))

    async def mailbox_status(self, mailbox: str, action_id: str | None = None) -> Response:
        return await self.request("MailboxStatus", _params(Mailbox=mailbox, ActionID=action_id))

    async def monitor(
        self,
        channel: str,
        file: str | None = None,
        file_format: str | None = None,
        mix: bool | None = None,
    ) -> Response:
        params = _params(Channel=channel, File=file, Format=file_format)
        if file is not None:
            params["Mix"] = bool(mix)
        return await self.request("Monitor", params)

    async def stop_monitor(self, channel: str) -> Response:
        return await self.request("StopMonitor", {"Channel": channel})

    async def change_monitor(self, channel: str, file: str) -> Response:
        return await self.request("ChangeMonitor", {"Channel": channel, "File": file})

    async def queues(self) -> Response:
        return await self.request("Queues")

    async def queue_status(self, action_id: str | None = None) -> Response:
        return await self.request("QueueStatus", _params(ActionID=action_id))

    async def queue_add(self, queue: str, interface: str, penalty: int = 0, member_name: str | None = None) -> Response:
        params = _params(Queue=queue, Interface=interface, Penalty=penalty or None, MemberName=member_name)
        return await self.request("QueueAdd", params)

    async def queue_remove(self, queue: str, interface: str) -> Response:
        return await self.request("QueueRemove", {"Queue": queue, "Interface": interface})

    async def queue_reload(self) -> Response:
        return await self.request("QueueReload")

    async def parked_calls(self, action_id: str | None = None) -> Response:
        return await self.request("ParkedCalls", _params(ActionID=action_id))

    async def list_commands(self, action_id: str | None = None) -> Response:
        return await self.request("ListCommands", _params(ActionID=action_id))

    async def set_cdr_user_field(self, user_field: str, channel: str, append: bool | None = None) -> Response:
        return await self.request("SetCDRUserField", _params(UserField=user_field, Channel=channel, Append=append))

    async def db_get(self, family: str, key: str) -> str:
        """Value stored under family/key, or an empty string when absent."""

        timeout = self.config.action_timeout
        token = await self.correlator.send_action("DBGet", {"Family": family, "Key": key})
        try:
            response = await self.correlator.await_response(token, timeout=timeout, release=False)
            if response.get("Response") != "Success":
                return ""
            # The value arrives in a follow-up DBGetResponse event with the same ActionID.
            while True:
                follow_up = await self.correlator.await_response(token, timeout=timeout, release=False)
                if follow_up.get("Val") is not None:
                    return follow_up.get("Val") or ""
                if completes_event_list(follow_up):
                    return ""
        finally:
            self.correlator.release(token)

    async def db_put(self, family: str, key: str, value: str) -> Response:
        return await self.request("DBPut", {"Family": family, "Key": key, "Val": value})
