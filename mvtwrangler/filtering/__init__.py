"""GeoJSON filter definitions, expression compilation and expression evaluation."""