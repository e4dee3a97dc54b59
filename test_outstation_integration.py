"""
Integration Test: IEC 104 master client against the breaker outstation

Runs a real IEC104Server on a free loopback port and drives it with
IEC104Client instances, checking interrogation, Select-Before-Operate and
spontaneous updates end to end.
"""

import asyncio

from config import DEFAULT_BREAKERS
from protocols.iec104.client import IEC104Client
from protocols.iec104.messages import CauseOfTransmission, TypeID
from protocols.iec104.server import IEC104Server
from outstation.engine import Outstation
from outstation.registry import BreakerRegistry
from outstation.sessions import SessionSet

TIMEOUT_S = 3


async def wait_until(condition, timeout=TIMEOUT_S):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def next_asdu(queue):
    return await asyncio.wait_for(queue.get(), timeout=TIMEOUT_S)


class Harness:
    """Outstation server plus any number of started clients"""

    def __init__(self, **kwargs):
        self.outstation = Outstation(BreakerRegistry(DEFAULT_BREAKERS), SessionSet(), **kwargs)
        self.server = IEC104Server(self.outstation, host='127.0.0.1', port=0)
        self.clients = []

    async def __aenter__(self):
        await self.server.start()
        return self

    async def __aexit__(self, *exc):
        for client, _ in self.clients:
            await client.close()
        await self.server.stop()

    async def connect(self):
        queue = asyncio.Queue()
        client = IEC104Client('127.0.0.1', self.server.port, on_asdu=queue.put_nowait)
        await client.connect()
        self.clients.append((client, queue))
        expected = len(self.clients)
        await client.start_data_transfer()
        await wait_until(lambda: sum(s.data_transfer_active
                                     for s in self.outstation.sessions) == expected)
        return client, queue


def test_interrogation_over_tcp():
    asyncio.run(_test_interrogation_over_tcp())


async def _test_interrogation_over_tcp():
    async with Harness() as harness:
        client, queue = await harness.connect()

        await client.interrogation(1)

        confirm = await next_asdu(queue)
        snapshot = await next_asdu(queue)
        termination = await next_asdu(queue)

        assert confirm.cause == CauseOfTransmission.ACTIVATION_CON
        assert snapshot.type_id == TypeID.M_SP_NA_1
        assert {o.information_object_address: o.element.value for o in snapshot.objects} == \
            {1001: True, 1002: True, 1003: False}
        assert termination.cause == CauseOfTransmission.ACTIVATION_TERMINATION


def test_interrogation_of_many_breakers_over_tcp():
    asyncio.run(_test_interrogation_of_many_breakers_over_tcp())


async def _test_interrogation_of_many_breakers_over_tcp():
    async with Harness() as harness:
        harness.outstation.registry = BreakerRegistry({2000 + i: True for i in range(70)})
        client, queue = await harness.connect()

        for _ in range(2):
            await client.interrogation(1)

            causes = []
            reported = []
            while not causes or causes[-1] != CauseOfTransmission.ACTIVATION_TERMINATION:
                asdu = await next_asdu(queue)
                causes.append(asdu.cause)
                if asdu.cause == CauseOfTransmission.INTERROGATED_BY_STATION:
                    reported.extend(o.information_object_address for o in asdu.objects)

            assert causes == [CauseOfTransmission.ACTIVATION_CON,
                              CauseOfTransmission.INTERROGATED_BY_STATION,
                              CauseOfTransmission.INTERROGATED_BY_STATION,
                              CauseOfTransmission.ACTIVATION_TERMINATION]
            assert reported == list(range(2000, 2070))

        assert len(harness.outstation.sessions) == 1
        assert harness.outstation.stats['send_errors'] == 0


def test_select_before_operate_over_tcp():
    asyncio.run(_test_select_before_operate_over_tcp())


async def _test_select_before_operate_over_tcp():
    async with Harness() as harness:
        client_a, queue_a = await harness.connect()
        client_b, queue_b = await harness.connect()

        await client_a.single_command(1, 1003, True, select=True)
        select_con = await next_asdu(queue_a)
        assert select_con.type_id == TypeID.C_SC_NA_1
        assert select_con.cause == CauseOfTransmission.ACTIVATION_CON
        assert select_con.objects[0].element.select is True
        assert harness.outstation.registry.get(1003) is False

        await client_a.single_command(1, 1003, True, select=False)
        delta_a = await next_asdu(queue_a)
        execute_con = await next_asdu(queue_a)
        delta_b = await next_asdu(queue_b)

        for delta in (delta_a, delta_b):
            assert delta.cause == CauseOfTransmission.SPONTANEOUS
            assert delta.objects[0].information_object_address == 1003
            assert delta.objects[0].element.value is True
        assert execute_con.cause == CauseOfTransmission.ACTIVATION_CON
        assert execute_con.negative is False
        assert harness.outstation.registry.get(1003) is True
        assert queue_b.empty()


def test_unknown_ioa_over_tcp():
    asyncio.run(_test_unknown_ioa_over_tcp())


async def _test_unknown_ioa_over_tcp():
    async with Harness() as harness:
        client, queue = await harness.connect()

        await client.single_command(1, 9999, True, select=True)
        reply = await next_asdu(queue)

        assert reply.negative is True
        assert reply.cause == CauseOfTransmission.UNKNOWN_INFORMATION_OBJECT_ADDRESS
        assert 9999 not in harness.outstation.registry


def test_stopdt_pauses_spontaneous_updates():
    asyncio.run(_test_stopdt_pauses_spontaneous_updates())


async def _test_stopdt_pauses_spontaneous_updates():
    async with Harness() as harness:
        client, queue = await harness.connect()

        await client.stop_data_transfer()
        await wait_until(lambda: not any(s.data_transfer_active
                                         for s in harness.outstation.sessions))
        assert await harness.outstation.set_breaker(1001, False) == 0

        await client.start_data_transfer()
        await wait_until(lambda: all(s.data_transfer_active
                                     for s in harness.outstation.sessions))
        assert await harness.outstation.set_breaker(1001, True) == 1

        delta = await next_asdu(queue)
        assert delta.objects[0].element.value is True
        assert queue.empty()


def test_disconnect_drops_session():
    asyncio.run(_test_disconnect_drops_session())


async def _test_disconnect_drops_session():
    async with Harness() as harness:
        client_a, queue_a = await harness.connect()
        client_b, _ = await harness.connect()

        await client_a.single_command(1, 1002, False, select=True)
        await next_asdu(queue_a)

        await client_a.close()
        await wait_until(lambda: len(harness.outstation.sessions) == 1)

        # The survivor cannot ride on the closed session's selection
        await client_b.single_command(1, 1002, False, select=False)
        await wait_until(lambda: harness.outstation.stats['asdus_received'] == 2)
        assert harness.outstation.registry.get(1002) is True
