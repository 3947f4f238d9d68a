import tempfile
import unittest


class TestIdentityProvisioner(unittest.TestCase):
    def test_ensure_room_is_idempotent(self) -> None:
        from fakes import build_stack, source_event

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            ev = source_event(channel_id="general")
            first = s["provisioner"].ensure_room(ev)
            second = s["provisioner"].ensure_room(ev)

            self.assertEqual(first.room_id, second.room_id)
            self.assertEqual(s["hs"].count("create_room"), 1)
            room = s["store"].get_room(first.room_id)
            assert room is not None
            self.assertEqual((room.source_adapter_id, room.source_channel_id), ("tg", "general"))

    def test_room_creation_body(self) -> None:
        from fakes import BOT_ID, OPERATOR, SPACE, build_stack, source_event

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            channel = s["provisioner"].ensure_room(source_event(channel_id="general"))

            (_, (body,)), = s["hs"].calls_of("create_room")
            self.assertEqual(body["name"], "general (general)")
            self.assertEqual(body["invite"], [OPERATOR])
            self.assertEqual(body["creation_content"], {"m.federate": False})
            self.assertEqual(body["power_level_content_override"]["users"], {BOT_ID: 100, OPERATOR: 100})

            space_state = s["hs"].rooms[SPACE]["state"]
            self.assertEqual(space_state[("m.space.child", channel.room_id)], {"via": ["example.org"]})
            self.assertIn(channel.room_id, s["provisioner"].bridge_rooms())

    def test_room_uses_channel_name_and_avatar(self) -> None:
        from fakes import build_stack, source_event

        from matrix_port.contracts.v1 import ChannelMetadata
        from matrix_port.kernel.media import MediaBlob

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            s["adapter"].channels["c9"] = ChannelMetadata(name="Lobby", avatar_ref="av1")
            s["adapter"].blobs["av1"] = MediaBlob(data=b"not-an-image", mime_type="image/png", filename="a.png")

            channel = s["provisioner"].ensure_room(source_event(channel_id="c9"))
            state = s["hs"].rooms[channel.room_id]["state"]
            self.assertEqual(state[("m.room.name", "")], {"name": "Lobby (c9)"})
            avatar = state[("m.room.avatar", "")]
            self.assertTrue(avatar["url"].startswith("mxc://"))
            self.assertEqual(avatar["info"], {"size": 12, "mimetype": "image/png"})

    def test_channel_lookup_failure_falls_back_to_raw_id(self) -> None:
        from fakes import build_stack, source_event

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            s["adapter"].fail_lookup = True
            channel = s["provisioner"].ensure_room(source_event(channel_id="c2"))
            state = s["hs"].rooms[channel.room_id]["state"]
            self.assertEqual(state[("m.room.name", "")], {"name": "c2 (c2)"})

    def test_create_room_failure_leaves_no_mapping(self) -> None:
        from fakes import build_stack, source_event

        from matrix_port.ports.matrix.client import MatrixError

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            s["hs"].fail["create_room"] = MatrixError("connection reset")
            with self.assertRaises(MatrixError):
                s["router"].provision(source_event())
            self.assertIsNone(s["store"].get_channel("tg", "general"))
            self.assertFalse(s["gate"].locked)

            del s["hs"].fail["create_room"]
            channel, _ = s["router"].provision(source_event(channel_id="other"))
            self.assertTrue(channel.room_id)

    def test_ensure_puppet_registers_once(self) -> None:
        from fakes import build_stack, source_event

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            ev = source_event(user_id="u1", author_nickname="Alice")
            first = s["provisioner"].ensure_puppet(ev)
            second = s["provisioner"].ensure_puppet(ev)

            self.assertEqual(first.puppet_id, second.puppet_id)
            self.assertEqual(s["hs"].count("register_identity"), 1)
            (_, (localpart,)), = s["hs"].calls_of("register_identity")
            self.assertTrue(localpart.startswith("port_"))
            self.assertEqual(len(localpart), len("port_") + 16)
            self.assertEqual(s["hs"].profiles[first.puppet_id]["displayname"], "Alice (u1)")

    def test_puppet_without_nickname_uses_lookup_then_id(self) -> None:
        from fakes import build_stack, source_event

        from matrix_port.contracts.v1 import UserMetadata

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            s["adapter"].users["u2"] = UserMetadata(nickname="Bob")
            bob = s["provisioner"].ensure_puppet(source_event(user_id="u2"))
            anon = s["provisioner"].ensure_puppet(source_event(user_id="u3"))
            self.assertEqual(s["hs"].profiles[bob.puppet_id]["displayname"], "Bob (u2)")
            self.assertEqual(s["hs"].profiles[anon.puppet_id]["displayname"], "u3")

    def test_membership_invites_and_joins_once(self) -> None:
        from fakes import build_stack, source_event

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            ev = source_event()
            prov = s["provisioner"]
            channel = prov.ensure_room(ev)
            puppet = prov.ensure_puppet(ev)
            prov.ensure_membership(channel, ev, puppet)
            prov.ensure_membership(channel, ev, puppet)

            self.assertEqual(s["hs"].count("invite"), 1)
            self.assertEqual(s["hs"].count("join_room"), 1)
            self.assertIn(puppet.puppet_id, s["hs"].rooms[channel.room_id]["members"])
            self.assertEqual(s["store"].members("tg", "general"), {"u1"})

    def test_membership_tolerates_prior_invite(self) -> None:
        from fakes import build_stack, source_event

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            ev = source_event()
            prov = s["provisioner"]
            channel = prov.ensure_room(ev)
            puppet = prov.ensure_puppet(ev)
            s["hs"].rooms[channel.room_id]["invited"].add(puppet.puppet_id)

            prov.ensure_membership(channel, ev, puppet)
            self.assertIn(puppet.puppet_id, s["hs"].rooms[channel.room_id]["members"])

    def test_refresh_room_renames_and_stamps(self) -> None:
        from fakes import build_stack, source_event

        from matrix_port.contracts.v1 import ChannelMetadata

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            ev = source_event(channel_id="c1")
            channel = s["provisioner"].ensure_room(ev)

            s["clock"].now += 10
            s["provisioner"].refresh_room(ev, channel)
            self.assertEqual(s["hs"].count("set_room_state"), 1)  # the space child only
            stored = s["store"].get_channel("tg", "c1")
            assert stored is not None
            self.assertEqual(stored.last_metadata_sync, s["clock"].now)

            s["adapter"].channels["c1"] = ChannelMetadata(name="Renamed")
            s["provisioner"].refresh_room(ev, channel)
            state = s["hs"].rooms[channel.room_id]["state"]
            self.assertEqual(state[("m.room.name", "")], {"name": "Renamed (c1)"})

    def test_refresh_room_keeps_name_when_lookup_fails(self) -> None:
        from fakes import build_stack, source_event

        from matrix_port.contracts.v1 import ChannelMetadata

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            s["adapter"].channels["c9"] = ChannelMetadata(name="Lobby")
            ev = source_event(channel_id="c9")
            channel = s["provisioner"].ensure_room(ev)

            s["adapter"].fail_lookup = True
            s["clock"].now += 10
            s["provisioner"].refresh_room(ev, channel)

            state = s["hs"].rooms[channel.room_id]["state"]
            self.assertEqual(state[("m.room.name", "")], {"name": "Lobby (c9)"})
            stored = s["store"].get_channel("tg", "c9")
            assert stored is not None
            self.assertEqual(stored.last_metadata_sync, s["clock"].now)

    def test_oversized_channel_avatar_still_maps_room(self) -> None:
        from fakes import build_stack, oversized_png, source_event

        from matrix_port.contracts.v1 import ChannelMetadata
        from matrix_port.kernel.media import MediaBlob

        with tempfile.TemporaryDirectory() as td:
            s = build_stack(td)
            data = oversized_png()
            s["adapter"].channels["c9"] = ChannelMetadata(name="Lobby", avatar_ref="big")
            s["adapter"].blobs["big"] = MediaBlob(data=data, mime_type="image/png", filename="big.png")

            s["router"].handle(source_event("one", channel_id="c9"))
            s["router"].handle(source_event("two", channel_id="c9"))

            self.assertEqual(s["hs"].count("create_room"), 1)
            channel = s["store"].get_channel("tg", "c9")
            assert channel is not None
            avatar = s["hs"].rooms[channel.room_id]["state"][("m.room.avatar", "")]
            self.assertEqual(avatar["info"], {"size": len(data), "mimetype": "image/png"})
            self.assertEqual(len(s["hs"].messages(channel.room_id)), 2)


class TestDisplayNames(unittest.TestCase):
    def test_names(self) -> None:
        from matrix_port.kernel.provision import new_localpart, puppet_display_name, room_display_name

        self.assertEqual(room_display_name("general", None), "general (general)")
        self.assertEqual(room_display_name("42", "Team"), "Team (42)")
        self.assertEqual(puppet_display_name("u1", "Alice"), "Alice (u1)")
        self.assertEqual(puppet_display_name("u1", ""), "u1")
        self.assertNotEqual(new_localpart("p_"), new_localpart("p_"))


if __name__ == "__main__":
    unittest.main()
