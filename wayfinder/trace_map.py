"""Map visualization of a navigation session."""

import json
from typing import Optional, Sequence

import folium
from folium import plugins

from .models import Location, RouteData
from .route import strip_markup


def load_trace(trace_path: str) -> list[dict]:
    """Load GPS trace from JSON file"""
    with open(trace_path) as f:
        data = json.load(f)
    return data["trace"]


def _accuracy_color(accuracy) -> str:
    if accuracy is None:
        return "gray"
    if accuracy < 10:
        return "green"
    if accuracy < 20:
        return "orange"
    return "red"


def create_session_map(route: Optional[RouteData], trace: list[dict], output_path: str,
                       track: Optional[Sequence[Location]] = None) -> bool:
    """Render route, raw fixes and filtered track to an HTML map.

    `trace` uses the recorder's entry format; entries without a location
    are skipped. Returns False when there is nothing to draw.
    """
    fixes = [e for e in trace if e.get("location")]
    points = [[e["location"]["lat"], e["location"]["lon"]] for e in fixes]
    if route:
        points += [[p.lat, p.lon] for p in route.polyline]
    if not points:
        print("Nothing to draw: no route and no GPS locations")
        return False

    center_lat = sum(p[0] for p in points) / len(points)
    center_lon = sum(p[1] for p in points) / len(points)
    m = folium.Map(location=[center_lat, center_lon], zoom_start=16)

    folium.TileLayer("OpenStreetMap", name="OpenStreetMap").add_to(m)
    folium.TileLayer("CartoDB positron", name="Light").add_to(m)

    if route:
        route_group = folium.FeatureGroup(name="Route", show=True)
        folium.PolyLine(
            [[p.lat, p.lon] for p in route.polyline],
            weight=5,
            color="blue",
            opacity=0.6,
            popup=f"Route: {route.total_distance:.0f}m, {route.total_duration / 60:.1f} min",
        ).add_to(route_group)

        for step in route.steps:
            folium.CircleMarker(
                location=[step.start.lat, step.start.lon],
                radius=6,
                color="purple",
                fill=True,
                popup=folium.Popup(
                    f"<b>Step {step.index + 1}</b><br>{strip_markup(step.instruction)}<br>"
                    f"{step.distance:.0f}m",
                    max_width=250,
                ),
            ).add_to(route_group)
        route_group.add_to(m)

    fixes_group = folium.FeatureGroup(name="GPS Fixes", show=False)
    for i, entry in enumerate(fixes):
        loc = entry["location"]
        elapsed = entry.get("elapsed", 0)
        accuracy = loc.get("accuracy")
        popup = f"""
            <b>Fix {i + 1}</b><br>
            Time: {int(elapsed // 60)}m {int(elapsed % 60)}s<br>
            Lat: {loc['lat']:.6f}<br>
            Lon: {loc['lon']:.6f}<br>
            Accuracy: {accuracy if accuracy is not None else 'unknown'}m
        """
        folium.CircleMarker(
            location=[loc["lat"], loc["lon"]],
            radius=4,
            color=_accuracy_color(accuracy),
            fill=True,
            popup=folium.Popup(popup, max_width=200),
        ).add_to(fixes_group)
    fixes_group.add_to(m)

    if track and len(track) >= 2:
        folium.PolyLine(
            [[p.lat, p.lon] for p in track],
            weight=3,
            color="black",
            opacity=0.8,
            popup="Filtered track",
        ).add_to(folium.FeatureGroup(name="Filtered Track", show=True).add_to(m))

    walked = [[p.lat, p.lon] for p in track] if track else points[:len(fixes)]
    if walked:
        folium.Marker(walked[0], popup="Start",
                      icon=folium.Icon(color="green", icon="play")).add_to(m)
        folium.Marker(walked[-1], popup="End",
                      icon=folium.Icon(color="red", icon="stop")).add_to(m)

    folium.LayerControl().add_to(m)
    plugins.Fullscreen().add_to(m)

    m.save(output_path)
    print(f"Session map saved to {output_path}")
    return True
