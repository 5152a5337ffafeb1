"""Minimal demonstration of a two-model fanout over an in-process channel."""

import asyncio

from chatbox_core import BackgroundService, StreamReducer
from chatbox_core.domain.models import ApiMode, Target, init_session
from chatbox_core.transport.channel import LocalChannel


async def main() -> None:
    service = BackgroundService()
    background, ui = LocalChannel.pair()
    service.attach(background)

    targets = [
        Target.from_api_mode(ApiMode(group_name="chatgptApiModelKeys", item_name="chatgptApi4oMini")),
        Target.from_api_mode(ApiMode(group_name="deepSeekApiModelKeys", item_name="deepseek_chat")),
    ]
    reducer = StreamReducer(init_session(targets=targets), channel=ui)

    question = "用一句话解释什么是 fanout"
    run_id = reducer.ask_fanout(question)
    await service.wait_idle()

    print("User:", question)
    for target in targets:
        print(f"[{target.id}] ({reducer.status(target.id, run_id)})")
    for item in reducer.items[1:]:
        print(f"{item.source_target_id}: {item.content}")
    merged = reducer.merge()
    if merged is not None:
        print("Merged:", merged.answer)


if __name__ == "__main__":
    asyncio.run(main())
