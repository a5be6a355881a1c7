from datetime import datetime, timedelta, UTC

import altair as alt
import pandas as pd
import streamlit as st

from charge_optimizer.lp_scheduler import lp_schedule, schedule_emissions, to_frame
import charge_optimizer.results_analysis as analysis
from charge_scheduler import config
from charge_scheduler.errors import Infeasible, SignalFetchError
from charge_scheduler.greedy_scheduler import optimize_schedule
from charge_scheduler.models import ChargingConstraints
from charge_scheduler.prepare_data import get_carbon_intensity


def get_flat_series(date_range, flat):
    return pd.Series(float(flat), index=date_range)


def get_intensity_series(profile: str, date_range: pd.DatetimeIndex, flat=None):
    if profile == "Flat":
        return get_flat_series(date_range, flat)
    elif profile == "Overnight Dip":
        return pd.Series([120.0 if t.hour in range(0, 6) else 250.0 for t in date_range], index=date_range)


now = pd.Timestamp(datetime.now(UTC)).floor("30min")
periods = pd.date_range(now, periods=48, freq="30min")
try:
    fetched = get_carbon_intensity(now, now + timedelta(hours=24))
    intensity = fetched["forecast"].reindex(periods, method="ffill").bfill()
except SignalFetchError:
    intensity = get_intensity_series("Overnight Dip", periods)
df = pd.DataFrame({"carbon_intensity_g_per_kWh": intensity}, index=periods)
df.index.name = "timestep"

st.set_page_config(
    page_title="EV Charge Scheduler",
    page_icon="⚡",
    layout="wide"
)
st.title("EV Charge Scheduler ⚡")

tab_info, tab_input, tab_results = st.tabs(["Info ℹ️", "Input 📝", "Results 📊"])

with tab_info:
    col_info1, col_space, col_info2 = st.columns([6, 1, 5])
    with col_info1:
        st.markdown("""
# Emissions-Aware EV Charging

This app plans when an electric vehicle should charge so that the energy it needs is delivered by a deadline with as little CO2 as possible. The horizon is split into 15 minute slots and the slots with the lowest forecast carbon intensity are filled first, at the charger's maximum rate, until the required energy is met. The same problem is also solved with linear programming (LP) as a reference.

## How to Use
1. Click the input tab.
2. Carbon intensity is fetched for the next 24 hours from [NESO's carbon intensity API](https://carbonintensity.org.uk/). Replace it with a profile, a CSV upload or the data editor if you want to explore other cases.
3. Set the session parameters: energy needed, deadline and charger limits.
4. Click "Plan Charging" at the bottom.
5. Click the results tab.
        """)
    with col_info2:
        st.markdown("""
## Results
From top to bottom, the results tab shows:
1. The carbon saved by the plan compared to plugging in and charging at full power straight away, and how far the greedy plan is from the LP optimum.
2. A graph of the charging power over time for the greedy plan and the LP schedule, with the carbon intensity underneath.
3. The list of charging intervals the vehicle would be given.
        """)

with tab_input:
    col_profiles, col_params = st.columns(2)

    with col_profiles:
        st.subheader("Carbon Intensity")
        profile = st.selectbox("Profile", ["Forecast", "Flat", "Overnight Dip"])
        if profile != "Forecast":
            flat_intensity = None
            if profile == "Flat":
                flat_intensity = st.number_input("Flat intensity (g/kWh)", value=200, min_value=0, step=10)
            df["carbon_intensity_g_per_kWh"] = get_intensity_series(profile, periods, flat=flat_intensity)

        uploaded_file = st.file_uploader("Upload CSV", type=["csv"])
        if uploaded_file:
            df_uploaded = pd.read_csv(uploaded_file)
            if "carbon_intensity_g_per_kWh" in df_uploaded.columns and len(df_uploaded) == len(df):
                df["carbon_intensity_g_per_kWh"] = df_uploaded["carbon_intensity_g_per_kWh"].to_numpy()
                st.success("CSV uploaded successfully. You may edit and re-download from the editor below.")
            else:
                st.error(f"CSV must have exactly {len(df)} rows and a carbon_intensity_g_per_kWh column")

        with st.expander("Edit data manually (optional)"):
            df = st.data_editor(df, num_rows="fixed", use_container_width=True, height=241)

    with col_params:
        st.subheader("Session Parameters")
        energy_kwh = st.number_input("Energy needed (kWh)", 0.5, 150.0, 20.0, 0.5)
        horizon_hours = st.slider("Hours until deadline", 1, 24, 10)
        st.markdown("#### Charger Limits")
        col1, col2 = st.columns(2)
        with col1:
            max_rate_kw = st.number_input("Max charge power (kW)", 1.0, 22.0, 7.2, 0.1)
        with col2:
            min_rate_kw = st.number_input("Min charge power (kW)", 0.0, max_rate_kw, 1.4, 0.1)
        min_interval_minutes = st.number_input("Shortest charging interval (min)", 0, 120, 15, 5)

    run_button = st.button("Plan Charging")

    if run_button:
        start = periods[0].to_pydatetime()
        constraints = ChargingConstraints(
            deadline=start + timedelta(hours=horizon_hours),
            energy_required_kwh=energy_kwh,
            max_rate_kw=max_rate_kw,
            min_rate_kw=min_rate_kw,
            min_interval_duration=timedelta(minutes=min_interval_minutes),
        )
        forecast = analysis.series_to_samples(df["carbon_intensity_g_per_kWh"])
        try:
            plan = optimize_schedule(forecast, constraints, start, slot_width=config.SLOT_WIDTH)
            st.success("✅ Plan found! See results tab.")
        except Infeasible as e:
            plan = e.best_effort_plan
            st.warning(f"⚠️ {e}. Showing the best-effort plan.")
        status, _, lp_results = lp_schedule(forecast, constraints, start, slot_width=config.SLOT_WIDTH)

        st.session_state["plan"] = plan
        st.session_state["forecast"] = forecast
        st.session_state["constraints"] = constraints
        st.session_state["lp_status"] = status
        st.session_state["lp_results"] = lp_results

with tab_results:
    if "plan" in st.session_state:
        st.header("Results")
        plan = st.session_state["plan"]
        forecast = st.session_state["forecast"]
        lp_results = st.session_state["lp_results"]
        # --- KPIs ---
        kpi_col1, kpi_col2 = st.columns(2)
        with kpi_col1:
            saved = analysis.carbon_saved(plan, forecast, st.session_state["constraints"])
            st.metric(label="🌱 Carbon Saved", value=f"{saved:.2f} kg CO₂")
        with kpi_col2:
            if st.session_state["lp_status"] == "Optimal":
                gap = analysis.plan_emissions(plan, forecast) - schedule_emissions(lp_results)
                st.metric(label="📐 Gap to LP Optimum", value=f"{gap / 1000:.3f} kg CO₂")
            else:
                st.metric(label="📐 Gap to LP Optimum", value="LP infeasible")

        # --- Plot schedules ---
        greedy = to_frame(plan)
        chart_data = pd.concat([
            greedy[["charge_kw"]].assign(schedule="greedy"),
            lp_results[["charge_kw"]].assign(schedule="lp"),
        ]).reset_index()

        power_chart = (
            alt.Chart(chart_data)
            .mark_line(interpolate="step-after")
            .encode(
                x=alt.X("start:T", title="Time"),
                y=alt.Y("charge_kw:Q", title="Power (kW)"),
                color=alt.Color(
                    "schedule:N",
                    legend=alt.Legend(
                        labelExpr="""
                        {
                          'greedy': 'Greedy plan',
                          'lp': 'LP optimum'
                        }[datum.label]
                        """
                    )
                )
            )
            .properties(title="Charging schedules", height=250)
        )

        # --- Plot intensity ---
        intensity_df = greedy.reset_index()[["start", "rate"]]
        intensity_chart = (
            alt.Chart(intensity_df)
            .mark_line(interpolate="step-after")
            .encode(
                x=alt.X("start:T", title="Time"),
                y=alt.Y("rate:Q", title="Carbon intensity (g/kWh)"),
                color=alt.value("orange")
            )
            .properties(title="Assumed carbon intensity", height=200)
        )

        charts = alt.vconcat(power_chart, intensity_chart).resolve_scale(x="shared")
        st.altair_chart(charts, use_container_width=True)

        intervals = pd.DataFrame([
            {"start": i.start, "end": i.end, "rate_kw": i.rate_kw, "energy_kwh": i.energy_kwh}
            for i in plan.intervals
        ])
        st.dataframe(intervals, use_container_width=True)

        # --- Download button ---
        csv = greedy.to_csv(index=True).encode("utf-8")
        st.download_button(
            label="Download Schedule as CSV",
            data=csv,
            file_name="schedule.csv",
            mime="text/csv"
        )
    else:
        st.write("No results to display!")
