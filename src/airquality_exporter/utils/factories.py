import factory

from airquality_exporter.sensing.sds011 import SDS011Reading


class MeasurementFactory(factory.Factory):
    class Meta:
        model = SDS011Reading

    pm25 = factory.Sequence(lambda n: 10.0 + n)
    pm10 = factory.Sequence(lambda n: 20.0 + n)
