"""Tests for the input resolver."""
from mediagraph.engine.inputs import (
    ConnectedInputs, is_image_handle, is_text_handle, resolve_connected_inputs,
)


def resolve(store, node_id):
    return resolve_connected_inputs(node_id, store.graph.nodes.values(), store.graph.edges)


class TestHandleClassification:
    def test_image_handles(self):
        assert is_image_handle("image")
        assert is_image_handle("image-2")
        assert is_image_handle("first_frame")
        assert not is_image_handle("text")
        assert not is_image_handle(None)

    def test_text_handles(self):
        assert is_text_handle("text")
        assert is_text_handle("text-1")
        assert is_text_handle("negative_prompt")
        assert not is_text_handle("image")
        assert not is_text_handle("")


class TestResolveConnectedInputs:
    def test_unconnected_node_is_empty(self, make_store):
        store = make_store([("gen", "nanoBanana", {})])
        assert resolve(store, "gen") == ConnectedInputs()

    def test_images_follow_edge_creation_order(self, make_store, edge):
        store = make_store(
            [
                ("a", "imageInput", {"image": "data:image/png;base64,AAA"}),
                ("b", "imageInput", {"image": "data:image/png;base64,BBB"}),
                ("gen", "nanoBanana", {}),
            ],
            [
                edge("a", "gen", "image", created_at=20),
                edge("b", "gen", "image", created_at=10),
            ],
        )
        inputs = resolve(store, "gen")
        assert inputs.images == ("data:image/png;base64,BBB", "data:image/png;base64,AAA")

    def test_untyped_handle_counts_as_image(self, make_store, edge):
        store = make_store(
            [("a", "imageInput", {"image": "img-a"}), ("out", "output", {})],
            [edge("a", "out")],
        )
        assert resolve(store, "out").images == ("img-a",)

    def test_first_text_wins(self, make_store, edge):
        store = make_store(
            [
                ("p1", "prompt", {"prompt": "first"}),
                ("p2", "prompt", {"prompt": "second"}),
                ("gen", "nanoBanana", {}),
            ],
            [edge("p1", "gen", "text"), edge("p2", "gen", "text")],
        )
        assert resolve(store, "gen").text == "first"

    def test_empty_outputs_are_skipped(self, make_store, edge):
        store = make_store(
            [
                ("empty", "imageInput", {"image": None}),
                ("blank", "prompt", {"prompt": ""}),
                ("gen", "nanoBanana", {}),
            ],
            [edge("empty", "gen", "image"), edge("blank", "gen", "text")],
        )
        inputs = resolve(store, "gen")
        assert inputs.images == ()
        assert inputs.text is None

    def test_edges_from_missing_nodes_are_ignored(self, make_store, edge):
        store = make_store([("gen", "nanoBanana", {})], [edge("ghost", "gen", "image")])
        assert resolve(store, "gen").images == ()

    def test_media_kinds_are_bucketed(self, make_store, edge):
        store = make_store(
            [
                ("vid", "generateVideo", {"outputVideo": "data:video/mp4;base64,VVV"}),
                ("aud", "audioInput", {"audioFile": "data:audio/mpeg;base64,AAA"}),
                ("mesh", "generate3d", {"output3dUrl": "https://cdn.test/model.glb"}),
                ("out", "output", {}),
            ],
            [edge("vid", "out", "video"), edge("aud", "out", "audio"), edge("mesh", "out", "3d")],
        )
        inputs = resolve(store, "out")
        assert inputs.videos == ("data:video/mp4;base64,VVV",)
        assert inputs.audio == ("data:audio/mpeg;base64,AAA",)
        assert inputs.model3d == "https://cdn.test/model.glb"
        assert inputs.images == ()

    def test_first_model3d_wins(self, make_store, edge):
        store = make_store(
            [
                ("m1", "generate3d", {"output3dUrl": "https://cdn.test/one.glb"}),
                ("m2", "generate3d", {"output3dUrl": "https://cdn.test/two.glb"}),
                ("view", "glbViewer", {}),
            ],
            [edge("m2", "view", "3d", created_at=5), edge("m1", "view", "3d", created_at=1)],
        )
        assert resolve(store, "view").model3d == "https://cdn.test/one.glb"

    def test_frame_grab_feeds_images(self, make_store, edge):
        store = make_store(
            [
                ("grab", "videoFrameGrab", {"outputImage": "data:image/png;base64,FFF"}),
                ("gen", "generateVideo", {}),
            ],
            [edge("grab", "gen", "image")],
        )
        assert resolve(store, "gen").images == ("data:image/png;base64,FFF",)

    def test_ease_curve_settings_from_parent(self, make_store, edge):
        store = make_store(
            [
                ("parent", "easeCurve", {"bezierHandles": [0.1, 0.2, 0.3, 0.4], "easingPreset": None}),
                ("child", "easeCurve", {}),
            ],
            [edge("parent", "child", "easeCurve")],
        )
        settings = resolve(store, "child").ease_curve
        assert settings.bezier_handles == (0.1, 0.2, 0.3, 0.4)
        assert settings.easing_preset is None

    def test_settings_edge_is_not_a_media_input(self, make_store, edge):
        store = make_store(
            [
                ("parent", "easeCurve", {"outputVideo": "data:video/mp4;base64,PPP"}),
                ("child", "easeCurve", {}),
            ],
            [edge("parent", "child", "easeCurve")],
        )
        inputs = resolve(store, "child")
        assert inputs.videos == ()
        assert inputs.ease_curve is not None

    def test_only_first_settings_edge_counts(self, make_store, edge):
        store = make_store(
            [
                ("first", "easeCurve", {"easingPreset": "easeInQuad"}),
                ("second", "easeCurve", {"easingPreset": "easeOutQuad"}),
                ("child", "easeCurve", {}),
            ],
            [edge("first", "child", "easeCurve"), edge("second", "child", "easeCurve")],
        )
        assert resolve(store, "child").ease_curve.easing_preset == "easeInQuad"

    def test_dynamic_inputs_follow_schema(self, make_store, edge):
        schema = [
            {"name": "prompt", "type": "text"},
            {"name": "image_url", "type": "image"},
            {"name": "tail_image_url", "type": "image"},
        ]
        store = make_store(
            [
                ("p", "prompt", {"prompt": "a cat"}),
                ("i1", "imageInput", {"image": "img-1"}),
                ("i2", "imageInput", {"image": "img-2"}),
                ("gen", "generateVideo", {"inputSchema": schema}),
            ],
            [
                edge("p", "gen", "text"),
                edge("i1", "gen", "image"),
                edge("i2", "gen", "image-1"),
            ],
        )
        inputs = resolve(store, "gen")
        assert inputs.dynamic_inputs == {
            "prompt": "a cat",
            "image_url": "img-1",
            "tail_image_url": "img-2",
        }
        assert inputs.images == ("img-1", "img-2")
        assert inputs.text == "a cat"

    def test_repeated_schema_handle_collects_list(self, make_store, edge):
        store = make_store(
            [
                ("i1", "imageInput", {"image": "img-1"}),
                ("i2", "imageInput", {"image": "img-2"}),
                ("gen", "nanoBanana", {"inputSchema": [{"name": "image_urls", "type": "image"}]}),
            ],
            [edge("i1", "gen", "image"), edge("i2", "gen", "image")],
        )
        assert resolve(store, "gen").dynamic_inputs == {"image_urls": ["img-1", "img-2"]}

    def test_array_edge_selects_item(self, make_store, edge):
        store = make_store(
            [
                ("arr", "array", {"outputItems": ["red", "green", "blue"], "outputText": '["red","green","blue"]'}),
                ("p1", "nanoBanana", {}),
                ("p2", "nanoBanana", {}),
                ("p3", "nanoBanana", {}),
            ],
            [
                edge("arr", "p1", "text", arrayItemIndex=1),
                edge("arr", "p2", "text", source_handle="text-2"),
                edge("arr", "p3", "text"),
            ],
        )
        assert resolve(store, "p1").text == "green"
        assert resolve(store, "p2").text == "blue"
        assert resolve(store, "p3").text == '["red","green","blue"]'

    def test_array_index_out_of_range_is_skipped(self, make_store, edge):
        store = make_store(
            [("arr", "array", {"outputItems": ["only"]}), ("gen", "nanoBanana", {})],
            [edge("arr", "gen", "text", arrayItemIndex=4)],
        )
        assert resolve(store, "gen").text is None

    def test_prompt_constructor_output_falls_back_to_template(self, make_store, edge):
        store = make_store(
            [
                ("pc", "promptConstructor", {"template": "raw template", "outputText": None}),
                ("gen", "nanoBanana", {}),
            ],
            [edge("pc", "gen", "text")],
        )
        assert resolve(store, "gen").text == "raw template"

    def test_resolution_does_not_mutate(self, make_store, edge, recorded_updates):
        store = make_store(
            [("a", "imageInput", {"image": "img"}), ("gen", "nanoBanana", {})],
            [edge("a", "gen", "image")],
        )
        updates = recorded_updates(store)
        resolve(store, "gen")
        resolve(store, "gen")
        assert updates == []

    def test_to_dict_uses_wire_names(self, make_store, edge):
        store = make_store(
            [("p", "prompt", {"prompt": "hi"}), ("gen", "nanoBanana", {})],
            [edge("p", "gen", "text")],
        )
        payload = resolve(store, "gen").to_dict()
        assert payload["text"] == "hi"
        assert payload["easeCurve"] is None
        assert payload["dynamicInputs"] == {}
