"""AGI: per-call command/response stream (process stdio or FastAGI over TCP).

Typical use inside a FastAGI handler:

    async def handler(session: AgiSession) -> None:
        await session.answer()
        await session.stream_file("hello-world")
        await session.hangup()
"""
