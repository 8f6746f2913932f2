import asyncio
import logging
import pprint
import sys

from sockline import Session

logging.basicConfig(level=logging.DEBUG)

URL = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:8080/socket"
CPU = {"identifier": "cpu.load", "from": "-5m", "until": "now", "granularity": "15s"}


async def go():
    session = Session()
    handle = session.subscribe(CPU, pprint.pprint, lambda err: print("error:", err))
    session.connect(URL)
    await asyncio.sleep(30)
    handle.unsubscribe()
    await asyncio.sleep(0.1)
    session.close()
    pprint.pprint(session.debug())


asyncio.run(go())
