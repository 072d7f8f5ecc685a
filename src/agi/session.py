"""High-level AGI commands on top of a ChannelCommandChannel."""

from __future__ import annotations

import dataclasses
import logging
import time as _time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

from agi.channel import AGIRES_OK, AgiResponse, AgiResult, ChannelCommandChannel

LOGGER = logging.getLogger(__name__)

AST_DIGIT_ANY: Final[str] = "0123456789#*"

CHANNEL_STATES: Final[dict[int, str]] = {
    0: "Channel is down and available",
    1: "Channel is down, but reserved",
    2: "Channel is off hook",
    3: "Digits (or equivalent) have been dialed",
    4: "Line is ringing",
    5: "Remote end is ringing",
    6: "Line is up",
    7: "Line is busy",
    8: "Digits (or equivalent) have been dialed while offhook",
    9: "Channel has detected an incoming call and is waiting for ring",
}


def quote(value: object) -> str:
    """Wrap a free-text argument in double quotes, escaping what would break the line."""

    text = str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\r", "").replace("\n", "\\n")
    return f'"{text}"'


@dataclass(frozen=True, slots=True)
class CallerId:
    name: str = ""
    protocol: str = ""
    username: str = ""
    host: str = ""
    port: str = ""


def parse_callerid(callerid: str) -> CallerId:
    """Parse ``"name" <proto:user@host:port>`` style caller ids."""

    name = ""
    rest = callerid.strip()
    if rest[:1] in ('"', "'"):
        delim = rest[0]
        name, _, rest = rest[1:].partition(delim)

    address, _, host_part = rest.strip("<> ").partition("@")
    protocol, sep, username = address.partition(":")
    if not sep:
        protocol, username = "", address

    host, _, port = host_part.partition(":")
    return CallerId(name=name, protocol=protocol, username=username, host=host, port=port)


class AgiSession:
    """One call's AGI conversation.

    Every method sends exactly one command (``verbose`` one per line) and
    returns the channel's result; see ``ChannelCommandChannel.send``.
    """

    def __init__(self, channel: ChannelCommandChannel) -> None:
        self.channel = channel
        self._conlog_busy = False

    @property
    def request(self) -> dict[str, str]:
        return self.channel.environment

    @property
    def arguments(self) -> list[str]:
        args: list[str] = []
        index = 1
        while (value := self.request.get(f"agi_arg_{index}")) is not None:
            args.append(value)
            index += 1
        return args

    @property
    def _delim(self) -> str:
        return self.channel.config.option_delimiter

    async def evaluate(self, command: str) -> AgiResult:
        return await self.channel.send(command)

    # Core commands

    async def answer(self) -> AgiResult:
        return await self.evaluate("ANSWER")

    async def hangup(self, channel: str = "") -> AgiResult:
        return await self.evaluate(f"HANGUP {channel}")

    async def channel_status(self, channel: str = "") -> AgiResult:
        res = await self.evaluate(f"CHANNEL STATUS {channel}")
        if not isinstance(res, AgiResponse):
            return res
        if res.result == -1:
            description = f"There is no channel that matches {channel}".strip()
        else:
            description = CHANNEL_STATES.get(res.result, f"Unknown ({res.result})")
        return dataclasses.replace(res, data=description)

    async def database_get(self, family: str, key: str) -> AgiResult:
        return await self.evaluate(f"DATABASE GET {quote(family)} {quote(key)}")

    async def database_put(self, family: str, key: str, value: object) -> AgiResult:
        return await self.evaluate(f"DATABASE PUT {quote(family)} {quote(key)} {quote(value)}")

    async def database_del(self, family: str, key: str) -> AgiResult:
        return await self.evaluate(f"DATABASE DEL {quote(family)} {quote(key)}")

    async def database_deltree(self, family: str, keytree: str = "") -> AgiResult:
        command = f"DATABASE DELTREE {quote(family)}"
        if keytree:
            command += f" {quote(keytree)}"
        return await self.evaluate(command)

    async def exec(self, application: str, options: str | Iterable[object] = "") -> AgiResult:
        if not isinstance(options, str):
            options = self._delim.join(str(opt) for opt in options)
        return await self.evaluate(f"EXEC {application} {options}")

    async def get_data(self, filename: str, timeout: int | None = None, max_digits: int | None = None) -> AgiResult:
        """Play ``filename`` and collect digits; the digits are in ``extra["result"]``."""

        command = f"GET DATA {filename}"
        if timeout is not None or max_digits is not None:
            command += f" {timeout if timeout is not None else 0}"
        if max_digits is not None:
            command += f" {max_digits}"
        return await self.evaluate(command)

    async def get_variable(self, name: str) -> AgiResult:
        return await self.evaluate(f"GET VARIABLE {name}")

    async def get_full_variable(self, expression: str, channel: str | None = None) -> AgiResult:
        command = f"GET FULL VARIABLE {expression}"
        if channel:
            command += f" {channel}"
        return await self.evaluate(command)

    async def get_variable_value(self, name: str) -> str | None:
        """Value of a channel variable, or None when it is unset or the command failed."""

        res = await self.get_variable(name)
        if not res.ok or res.result != 1:
            return None
        return res.data

    async def noop(self, text: str = "") -> AgiResult:
        return await self.evaluate(f"NOOP {quote(text)}")

    async def receive_char(self, timeout: int = -1) -> AgiResult:
        return await self.evaluate(f"RECEIVE CHAR {timeout}")

    async def record_file(
        self,
        filename: str,
        file_format: str,
        escape_digits: str = "",
        timeout: int = -1,
        offset: int | None = None,
        beep: bool = False,
        silence: int | None = None,
    ) -> AgiResult:
        command = f"RECORD FILE {filename} {file_format} {quote(escape_digits)} {timeout}"
        if offset is not None:
            command += f" {offset}"
        if beep:
            command += " BEEP"
        if silence is not None:
            command += f" s={silence}"
        return await self.evaluate(command)

    async def say_alpha(self, text: str, escape_digits: str = "") -> AgiResult:
        return await self.evaluate(f"SAY ALPHA {text} {quote(escape_digits)}")

    async def say_digits(self, digits: str | int, escape_digits: str = "") -> AgiResult:
        return await self.evaluate(f"SAY DIGITS {digits} {quote(escape_digits)}")

    async def say_number(self, number: int, escape_digits: str = "") -> AgiResult:
        return await self.evaluate(f"SAY NUMBER {number} {quote(escape_digits)}")

    async def say_phonetic(self, text: str, escape_digits: str = "") -> AgiResult:
        return await self.evaluate(f"SAY PHONETIC {text} {quote(escape_digits)}")

    async def say_time(self, when: int | None = None, escape_digits: str = "") -> AgiResult:
        if when is None:
            when = int(_time.time())
        return await self.evaluate(f"SAY TIME {when} {quote(escape_digits)}")

    async def send_image(self, image: str) -> AgiResult:
        return await self.evaluate(f"SEND IMAGE {image}")

    async def send_text(self, text: str) -> AgiResult:
        return await self.evaluate(f"SEND TEXT {quote(text)}")

    async def set_autohangup(self, seconds: int = 0) -> AgiResult:
        return await self.evaluate(f"SET AUTOHANGUP {seconds}")

    async def set_callerid(self, callerid: str) -> AgiResult:
        return await self.evaluate(f"SET CALLERID {callerid}")

    async def set_context(self, context: str) -> AgiResult:
        return await self.evaluate(f"SET CONTEXT {context}")

    async def set_extension(self, extension: str) -> AgiResult:
        return await self.evaluate(f"SET EXTENSION {extension}")

    async def set_priority(self, priority: int | str) -> AgiResult:
        return await self.evaluate(f"SET PRIORITY {priority}")

    async def set_music(self, enabled: bool = True, music_class: str = "") -> AgiResult:
        return await self.evaluate(f"SET MUSIC {'ON' if enabled else 'OFF'} {music_class}")

    async def set_variable(self, name: str, value: object) -> AgiResult:
        return await self.evaluate(f"SET VARIABLE {name} {quote(value)}")

    async def stream_file(self, filename: str, escape_digits: str = "", offset: int = 0) -> AgiResult:
        return await self.evaluate(f"STREAM FILE {filename} {quote(escape_digits)} {offset}")

    async def tdd_mode(self, setting: str) -> AgiResult:
        return await self.evaluate(f"TDD MODE {setting}")

    async def verbose(self, message: str, level: int = 1) -> AgiResult | None:
        res: AgiResult | None = None
        for line in str(message).replace("\r\n", "\n").split("\n"):
            res = await self.evaluate(f"VERBOSE {quote(line)} {level}")
        return res

    async def wait_for_digit(self, timeout: int = -1) -> AgiResult:
        return await self.evaluate(f"WAIT FOR DIGIT {timeout}")

    # Dialplan applications

    async def exec_absolutetimeout(self, seconds: int = 0) -> AgiResult:
        return await self.exec("Set", f"TIMEOUT(absolute)={seconds}")

    async def exec_setlanguage(self, language: str = "en") -> AgiResult:
        return await self.exec("Set", f"CHANNEL(language)={language}")

    async def exec_dial(
        self,
        tech: str,
        identifier: str,
        timeout: int | None = None,
        options: str | None = None,
        url: str | None = None,
    ) -> AgiResult:
        args = [f"{tech}/{identifier}", timeout, options, url]
        return await self.exec("Dial", self._join_trimmed(args))

    async def exec_goto(self, first: str, second: str | None = None, third: str | int | None = None) -> AgiResult:
        return await self.exec("Goto", self._join_trimmed([first, second, third]))

    async def set_location(self, context: str, extension: str = "s", priority: int | str = 1) -> None:
        await self.set_context(context)
        await self.set_extension(extension)
        await self.set_priority(priority)

    async def menu(self, choices: Mapping[str, str], timeout: int = 2000, max_rounds: int | None = None) -> str | None:
        """Play each prompt until a listed key is pressed.

        ``choices`` maps a key to the sound file announcing it. Returns the key,
        or None when the channel fails (e.g. hangup) or ``max_rounds`` ran out.
        """

        keys = "".join(choices)
        rounds = 0
        while max_rounds is None or rounds < max_rounds:
            rounds += 1
            for prompt in choices.values():
                res = await self.stream_file(prompt, keys)
                if res.code != AGIRES_OK or res.result == -1:
                    return None
                if res.result:
                    return chr(res.result)

            res = await self.get_data("beep", timeout, 1)
            if res.code != AGIRES_OK or res.result == -1:
                return None
            digits = res.extra.get("result", "")
            if digits and digits in keys:
                return digits
        return None

    def parse_callerid(self, callerid: str | None = None) -> CallerId:
        if callerid is None:
            callerid = self.request.get("agi_callerid", "")
        return parse_callerid(callerid)

    async def conlog(self, message: str, level: int = 1) -> None:
        """Mirror a diagnostic line to the Asterisk console when debugging is on."""

        LOGGER.debug(message)
        if not self.channel.config.debug or self._conlog_busy:
            return
        self._conlog_busy = True
        try:
            await self.verbose(message, level)
        finally:
            self._conlog_busy = False

    def _join_trimmed(self, values: list[object]) -> str:
        text = self._delim.join("" if value is None else str(value) for value in values)
        return text.strip(self._delim)
