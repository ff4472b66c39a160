from __future__ import annotations
import asyncio
import os
import tempfile
import time

import streamlit as st

from rectlapse.core import utils
from rectlapse.core.config import SourceLimits, TimelineConfig
from rectlapse.core.errors import AlgorithmFailure
from rectlapse.core.sequence import ANNEAL, GREEDY
from rectlapse.visualization.timeline import Timeline

st.set_page_config(page_title="rectlapse", page_icon="🟥", layout="wide")

st.title("rectlapse — rectangle fitting, step by step")

LIMITS = SourceLimits()

with st.sidebar:
    st.header("⚙️ Settings")
    algorithm = st.selectbox("Algorithm", ["greedy", "anneal"])
    num_rects = st.slider("Rectangles", 1, LIMITS.max_rectangles, 1000, step=1)
    speed = st.slider("Playback speed (steps/s)", 1, 500, 100)
    run_button = st.button("🚀 Run")

if "timeline" not in st.session_state:
    st.session_state.timeline = Timeline(TimelineConfig())
timeline: Timeline = st.session_state.timeline
timeline.set_speed(speed)

src_file = st.file_uploader("Source image", type=["jpg", "jpeg", "png"], key="src")

if run_button:
    if not src_file:
        st.error("Please upload an image.")
        st.stop()

    with tempfile.TemporaryDirectory() as tmp:
        src_path = os.path.join(tmp, src_file.name)
        with open(src_path, "wb") as f:
            f.write(src_file.getbuffer())
        try:
            width, height, rgba = utils.load_source(src_path, LIMITS)
        except (ValueError, OSError) as e:
            st.warning(str(e))
            st.stop()

    with st.spinner("Fitting rectangles... ⏳"):
        algo_id = GREEDY if algorithm == "greedy" else ANNEAL
        try:
            asyncio.run(timeline.run(algo_id, num_rects, rgba, width, height, source_name=src_file.name))
        except AlgorithmFailure as e:
            st.error(f"Algorithm failed: {e}")
            st.stop()

if not timeline.has_result:
    st.info("Upload an image and press Run.")
    st.stop()

stage = st.empty()


def show(step, surface):
    stage.image(surface.to_image(), caption=f"step {step} / {timeline.frame_count}")


timeline.on_frame = show

col1, col2 = st.columns([4, 1])
with col1:
    step = st.slider("Step", 1, max(2, timeline.frame_count), timeline.playback.current_step, disabled=timeline.frame_count < 2)
with col2:
    play = st.button("⏸ Pause" if timeline.playback.is_playing else "▶️ Play")

# only a moved slider seeks; playback may have left it behind the current step
last_slider = st.session_state.get("last_slider")
st.session_state.last_slider = step

if play:
    timeline.toggle_play(time.perf_counter() * 1000.0)
elif last_slider is not None and step != last_slider:
    timeline.seek(step)
else:
    timeline.playback.render()

while timeline.playback.is_playing:
    timeline.tick(time.perf_counter() * 1000.0)
    time.sleep(1 / 60)

st.markdown("### Export")
c1, c2, c3 = st.columns(3)
with c1:
    if st.button("🖼️ PNG"):
        result = asyncio.run(timeline.export_snapshot())
        if result.ok:
            st.download_button("⬇️ Download PNG", data=result.data, file_name=result.filename, mime="image/png")
        else:
            st.error(str(result.error))
with c2:
    if st.button("🎞️ GIF"):
        bar = st.progress(0)
        result = asyncio.run(timeline.export_animated(progress=lambda p: bar.progress(p)))
        if result.ok:
            st.download_button("⬇️ Download GIF", data=result.data, file_name=result.filename, mime="image/gif")
        else:
            st.error(str(result.error))
with c3:
    if st.button("🗂️ Frames (ZIP)"):
        bar = st.progress(0)
        result = asyncio.run(timeline.export_archive(progress=lambda p: bar.progress(p)))
        if result.ok:
            st.download_button("⬇️ Download ZIP", data=result.data, file_name=result.filename, mime="application/zip")
        else:
            st.error(str(result.error))
